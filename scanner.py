"""
scanner.py — HF4A card scanner — identification pipeline + batch CLI.

Per card region:
  1. Upright crop (detected corners or whole-photo contour detection)
  2. dHash of the crop and OCR text, computed concurrently
  3. MatchFusion joins the text and hash candidates into one result
  4. Result enriched with catalog metadata and any stored correction

Multi-card scans take the regions produced by the detection service
(corners + type label + raw text), process every region concurrently, and
place each result on a row/column grid.

Usage:
    python3 scanner.py photos/*.jpg                 # identify each photo
    python3 scanner.py photos/ --types refinery,thruster
    python3 scanner.py photos/ --verbose            # per-phase match detail
"""

import argparse
import asyncio
import logging
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import cv2

from card_detect import crop_region, detect_and_crop_card
from card_index import CardIndex
from grid import assign_cells
from image_hash import compute_hash, hash_to_hex
from match_fusion import MatchFusion
from ocr import OCRExtraction, create_reader, extract_card_text

logger = logging.getLogger("scanner")

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp"}


@dataclass
class DetectedRegion:
    """One card found by the detection service in a multi-card photo."""
    corners: list
    type_label: Optional[str] = None
    raw_text: str = ""

    @classmethod
    def from_dict(cls, data):
        """
        Accepts corners as [[x, y], ...] or [{"x": .., "y": ..}, ...] and the
        type/text under either the short or long key names.
        """
        corners = []
        for p in data.get("corners") or []:
            if isinstance(p, dict):
                corners.append((float(p["x"]), float(p["y"])))
            else:
                corners.append((float(p[0]), float(p[1])))
        if len(corners) != 4:
            raise ValueError(f"Region needs exactly 4 corners, got {len(corners)}")
        return cls(
            corners=corners,
            type_label=data.get("type_label") or data.get("type"),
            raw_text=data.get("raw_text") or data.get("text") or "",
        )


class CardScanner:
    """
    Usage:
        scanner = CardScanner(CardIndex(), catalog=catalog, corrections=store)
        report = await scanner.identify_card(card_img)
        reports = await scanner.scan_regions(photo, regions)
    """

    def __init__(self, index=None, catalog=None, corrections=None, reader=None,
                 reader_factory=create_reader, active_types=None):
        self.index = index if index is not None else CardIndex()
        self.fusion = MatchFusion(self.index)
        self.catalog = catalog
        self.corrections = corrections
        self.active_types = active_types
        self._reader = reader
        self._reader_factory = reader_factory
        self._reader_lock = threading.Lock()
        # One EasyOCR model, not safe to share across threads
        self._ocr_lock = threading.Lock()

    # ─── OCR reader (loaded on first use) ───

    @property
    def reader_loaded(self):
        return self._reader is not None

    def get_reader(self):
        if self._reader is None and self._reader_factory is not None:
            with self._reader_lock:
                if self._reader is None:
                    self._reader = self._reader_factory()
        return self._reader

    def _ocr(self, card_img):
        reader = self.get_reader()
        if reader is None:
            return OCRExtraction()
        with self._ocr_lock:
            return extract_card_text(card_img, reader)

    # ─── Single card ───

    async def identify_card(self, card_img, ocr=None, active_types=None):
        """
        Identify one upright card crop.

        Args:
            card_img: BGR card image
            ocr: OCRExtraction if the text is already known; otherwise OCR runs
                 on the crop alongside hashing
            active_types: overrides the scanner's active type filter

        Returns:
            report dict (see _report)
        """
        t0 = time.time()
        loop = asyncio.get_running_loop()
        types = active_types if active_types is not None else self.active_types

        hash_task = loop.run_in_executor(None, compute_hash, card_img)
        if ocr is None:
            ocr_task = loop.run_in_executor(None, self._ocr, card_img)
            query_hash, ocr = await asyncio.gather(hash_task, ocr_task)
        else:
            query_hash = await hash_task

        result, diag = await self.fusion.identify_with_diagnostics(ocr, query_hash, types)
        return self._report(result, diag, ocr, query_hash, time.time() - t0)

    async def identify_photo(self, img, ocr=None, active_types=None):
        """Find the card in a whole photo, crop it, identify it."""
        card_img, detected = detect_and_crop_card(img)
        report = await self.identify_card(card_img, ocr=ocr, active_types=active_types)
        report["card_detected"] = detected
        return report

    # ─── Multi-card ───

    async def scan_regions(self, img, regions, active_types=None):
        """
        Identify every detected region of one photo concurrently.

        Args:
            img: full BGR photo the region corners refer to
            regions: list of DetectedRegion

        Returns:
            list of report dicts in region order, each with row/col
        """
        if not regions:
            return []

        _, cells = assign_cells([r.corners for r in regions])
        reports = await asyncio.gather(*[
            self._scan_region(img, region, active_types) for region in regions
        ])
        for i, (report, (row, col)) in enumerate(zip(reports, cells)):
            report["region"] = i
            report["row"] = row
            report["col"] = col
        logger.info("Scanned %d regions: %d identified", len(reports),
                    sum(1 for r in reports if r.get("result")))
        return list(reports)

    async def _scan_region(self, img, region, active_types):
        card_img = crop_region(img, region.corners)
        if card_img is None:
            return {"result": None, "error": "degenerate region"}

        ocr = None
        if region.raw_text or region.type_label:
            ocr = OCRExtraction.from_text(full_text=region.raw_text,
                                          type_text=region.type_label or "")
        return await self.identify_card(card_img, ocr=ocr, active_types=active_types)

    # ─── Reporting ───

    def _report(self, result, diag, ocr, query_hash, elapsed):
        hash_hex = hash_to_hex(query_hash)
        report = {
            "result": result.to_dict() if result else None,
            "diagnostics": diag.to_dict(),
            "ocr": ocr.to_dict(),
            "hash": hash_hex,
            "time": round(elapsed, 3),
        }

        if result and self.catalog is not None:
            report["card"] = self.catalog.describe(result.card_id)

        if self.corrections is not None:
            correction = self.corrections.get(hash_hex)
            if correction is not None:
                report["correction"] = correction.corrected_card_id

        if result:
            logger.info("Identified %s (%s, %s) in %.2fs", result.card_id,
                        result.match_source, result.confidence, elapsed)
        else:
            logger.info("Not identified: %s", diag.rejection_reason)
        return report


# ─────────────────────────────────────────────────────────────
# BATCH CLI
# ─────────────────────────────────────────────────────────────

def find_card_images(paths):
    images = []
    for p in map(Path, paths):
        if p.is_dir():
            images.extend(sorted(f for f in p.iterdir() if f.suffix.lower() in IMAGE_EXTENSIONS))
        elif p.suffix.lower() in IMAGE_EXTENSIONS:
            images.append(p)
    return images


def summary_table(rows):
    from prettytable import PrettyTable

    table = PrettyTable()
    table.field_names = ["File", "Card", "Source", "Conf", "Fused", "Hash d", "Time"]
    table.align["File"] = "l"
    table.align["Card"] = "l"
    table.align["Fused"] = "r"
    table.max_width["File"] = 28
    table.max_width["Card"] = 32

    for name, report in rows:
        r = report.get("result")
        if report.get("error"):
            table.add_row([name, f"ERROR: {report['error']}", "-", "-", "-", "-", "-"])
        elif r is None:
            reason = report["diagnostics"].get("rejection") or "?"
            table.add_row([name, f"(unidentified: {reason})", "-", "-", "-", "-",
                           f"{report['time']:.1f}s"])
        else:
            table.add_row([
                name, f"{r['name']} [{r['card_id']}]", r["match_source"], r["confidence"],
                f"{r['fused_score']:.3f}",
                r["hash_distance"] if r["hash_distance"] is not None else "-",
                f"{report['time']:.1f}s",
            ])
    return table


async def _scan_files(scanner, images, quiet=False):
    await scanner.index.load()
    rows = []
    for i, path in enumerate(images):
        img = cv2.imread(str(path))
        if img is None:
            rows.append((path.name, {"error": "unreadable image"}))
            continue
        report = await scanner.identify_photo(img)
        if not quiet:
            r = report["result"]
            print(f"[{i+1}/{len(images)}] {path.name}: "
                  + (f"{r['card_id']} ({r['confidence']})" if r else "no match"))
        rows.append((path.name, report))
    return rows


def main():
    parser = argparse.ArgumentParser(description="HF4A Card Scanner")
    parser.add_argument("paths", nargs="+", help="Image files or directories")
    parser.add_argument("--types", help="Comma-separated card types to match against")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show extra debug output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Show summary table only")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    images = find_card_images(args.paths)
    if not images:
        print("No images found")
        sys.exit(1)

    active_types = [t.strip() for t in args.types.split(",")] if args.types else None
    scanner = CardScanner(active_types=active_types)

    t0 = time.time()
    rows = asyncio.run(_scan_files(scanner, images, quiet=args.quiet))

    print(summary_table(rows))
    identified = sum(1 for _, r in rows if r.get("result"))
    print(f"\n  Identified {identified}/{len(rows)} in {time.time() - t0:.1f}s")


if __name__ == "__main__":
    main()
