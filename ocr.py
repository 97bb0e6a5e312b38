"""
ocr.py — Card text extraction via EasyOCR.

Produces an OCRExtraction for one upright card crop:
  - full_text:  everything read from the whole card
  - type_text:  the type banner at the top of the card (top 15%)
  - title_text: the card name at the bottom of the card (bottom 20%)

Any OCR engine can feed the matchers as long as it builds an OCRExtraction;
EasyOCR is just the one wired in here. Per-line confidences are kept for
diagnostics only; nothing downstream thresholds on them.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional

import cv2

from config import (
    OCR_REGIONS, OCR_LANGUAGES, OCR_GPU, OCR_REGION_MIN_WIDTH,
    OCR_MIN_CONFIDENCE, OCR_MIN_CONTENT_CHARS, TYPE_PATTERNS,
)

logger = logging.getLogger("ocr")

_WHITESPACE = re.compile(r"\s+")
_TYPE_PATTERNS = [(re.compile(p, re.IGNORECASE), t) for p, t in TYPE_PATTERNS]


def normalize_text(text):
    """Collapse whitespace and trim."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()


@dataclass(frozen=True)
class OCRLine:
    region: str
    text: str
    confidence: float


@dataclass(frozen=True)
class OCRExtraction:
    """Text read from one card region set."""
    full_text: str = ""
    type_text: str = ""
    title_text: str = ""
    lines: tuple = field(default_factory=tuple)
    elapsed_ms: Optional[float] = None

    @classmethod
    def from_text(cls, full_text="", type_text="", title_text=""):
        return cls(
            full_text=normalize_text(full_text),
            type_text=normalize_text(type_text),
            title_text=normalize_text(title_text),
        )

    @property
    def has_content(self) -> bool:
        """True when any region produced a meaningful amount of text."""
        return any(
            len(t) >= OCR_MIN_CONTENT_CHARS
            for t in (self.type_text, self.title_text, self.full_text)
        )

    @property
    def line_confidences(self):
        return [line.confidence for line in self.lines]

    def to_dict(self):
        return {
            "full_text": self.full_text,
            "type_text": self.type_text,
            "title_text": self.title_text,
            "lines": [
                {"region": l.region, "text": l.text, "confidence": round(l.confidence, 3)}
                for l in self.lines
            ],
            "elapsed_ms": self.elapsed_ms,
        }


def parse_type_from_text(text):
    """
    Parse a card type from the type banner text.
    Handles OCR variations: "Refinery", "REFINERY", "Refiner", "GW Thruster".
    Returns the type key or None.
    """
    if not text:
        return None
    for pattern, card_type in _TYPE_PATTERNS:
        if pattern.search(text):
            return card_type
    return None


# ─────────────────────────────────────────────────────────────
# EASYOCR EXTRACTION
# ─────────────────────────────────────────────────────────────

def create_reader(gpu=OCR_GPU):
    """Load the EasyOCR model (~4s). Call once and reuse."""
    import easyocr

    logger.info("Loading EasyOCR model (gpu=%s)...", gpu)
    return easyocr.Reader(OCR_LANGUAGES, gpu=gpu, verbose=False)


def _crop_region(img, region):
    h, w = img.shape[:2]
    y0 = int(h * region["y_start"])
    y1 = int(h * region["y_end"])
    x0 = int(w * region["x_start"])
    x1 = int(w * region["x_end"])
    roi = img[y0:y1, x0:x1]

    if roi.size > 0 and roi.shape[1] < OCR_REGION_MIN_WIDTH:
        scale = OCR_REGION_MIN_WIDTH / roi.shape[1]
        roi = cv2.resize(roi, None, fx=scale, fy=scale, interpolation=cv2.INTER_CUBIC)
    return roi


def _read_region(img, reader, name):
    """OCR one named region. Returns (text, [OCRLine, ...])."""
    roi = _crop_region(img, OCR_REGIONS[name])
    if roi.size == 0:
        return "", []

    try:
        results = reader.readtext(roi)
    except Exception as e:
        logger.warning("EasyOCR failed on %s region: %s", name, e)
        return "", []

    # Reading order: top to bottom, then left to right
    results = sorted(results, key=lambda r: (min(pt[1] for pt in r[0]), min(pt[0] for pt in r[0])))

    lines = []
    for (bbox, text, conf) in results:
        text = normalize_text(text)
        if not text or conf < OCR_MIN_CONFIDENCE:
            continue
        lines.append(OCRLine(region=name, text=text, confidence=float(conf)))

    return " ".join(line.text for line in lines), lines


def extract_card_text(img, reader):
    """
    Run OCR over the full card, type banner and title strip.

    Args:
        img: BGR card image (perspective-corrected, portrait)
        reader: EasyOCR reader instance

    Returns:
        OCRExtraction
    """
    t0 = time.time()

    full_text, full_lines = _read_region(img, reader, "full")
    type_text, type_lines = _read_region(img, reader, "type")
    title_text, title_lines = _read_region(img, reader, "title")

    elapsed_ms = round((time.time() - t0) * 1000, 1)
    logger.info("OCR complete in %.0fms: type='%s' title='%s' (%d chars total)",
                elapsed_ms, type_text, title_text, len(full_text))

    return OCRExtraction(
        full_text=full_text,
        type_text=type_text,
        title_text=title_text,
        lines=tuple(full_lines + type_lines + title_lines),
        elapsed_ms=elapsed_ms,
    )
