"""
server.py — FastAPI server for the HF4A card scanner

Exposes the identification pipeline over HTTP so the phone/web UI can send a
photo (or a multi-card photo plus the detection service's regions) and get
back ranked identifications with diagnostics.

Architecture:
    ├── Card index          (card_index.py — loaded once at startup)
    ├── Card catalog        (catalog.py — optional metadata enrichment)
    ├── Corrections store   (corrections.py)
    ├── Scanner pipeline    (scanner.py — CardScanner)
    └── FastAPI server      (this file)
        ├── POST   /identify                → one card photo (+ optional OCR text)
        ├── POST   /scan                    → multi-card photo + detected regions
        ├── GET    /api/status              → index state, thresholds, uptime
        ├── GET    /api/corrections         → list manual corrections
        ├── POST   /api/corrections         → record a manual correction
        └── DELETE /api/corrections/{hash}  → remove one correction

Usage:
    python server.py                          # localhost:8080
    python server.py --host 0.0.0.0 --port 9000
"""

import argparse
import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import cv2
import numpy as np
import uvicorn
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse

from card_index import CardIndex, CatalogUnavailable
from catalog import CardCatalog
from config import (
    HASH_MATCH_THRESHOLD, HASH_ONLY_REJECT_DISTANCE, TEXT_WEIGHT, HASH_WEIGHT, CARD_TYPES,
)
from corrections import CorrectionsStore, ManualCorrection
from ocr import OCRExtraction
from scanner import CardScanner, DetectedRegion

# ─────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("server")

# ─────────────────────────────────────────────────────────────
# GLOBALS
# Set up in the lifespan handler. Anything already set (tests) is kept.
# ─────────────────────────────────────────────────────────────

scanner_resources: dict = {
    "scanner": None,       # CardScanner
    "corrections": None,   # CorrectionsStore
}

start_time: float = 0.0


# ─────────────────────────────────────────────────────────────
# RESOURCE LOADING
# ─────────────────────────────────────────────────────────────

def _load_catalog():
    """cards.json is enrichment only; the scanner works without it."""
    try:
        return CardCatalog().load()
    except CatalogUnavailable as e:
        logger.warning("Card catalog not loaded (%s); results won't carry metadata", e)
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global start_time
    start_time = time.time()

    logger.info("Starting server initialization...")
    loop = asyncio.get_running_loop()

    if scanner_resources["corrections"] is None:
        scanner_resources["corrections"] = CorrectionsStore()

    if scanner_resources["scanner"] is None:
        catalog = await loop.run_in_executor(None, _load_catalog)
        scanner_resources["scanner"] = CardScanner(
            CardIndex(), catalog=catalog, corrections=scanner_resources["corrections"],
        )

    # Warm the index. A failure here isn't fatal: requests retry the load
    # and answer 503 until it succeeds.
    try:
        await scanner_resources["scanner"].index.load()
    except CatalogUnavailable as e:
        logger.warning("Card index unavailable at startup: %s", e)

    logger.info("Server ready")
    yield
    logger.info("Server shutdown complete")


app = FastAPI(title="HF4A Card Scanner", lifespan=lifespan)


# ─────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────

def _decode_image(data):
    if not data:
        return None
    return cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)


def _parse_types(types):
    if not types:
        return None
    return [t.strip().lower() for t in types.split(",") if t.strip()]


def _error(message, status_code):
    return JSONResponse(content={"error": message}, status_code=status_code)


async def _read_upload(image):
    content_type = image.content_type or ""
    if content_type and not content_type.startswith("image/") \
            and content_type != "application/octet-stream":
        return None, _error(f"Expected image file, got {content_type}", 400)

    img = _decode_image(await image.read())
    if img is None:
        return None, _error("Could not decode image", 400)
    return img, None


# ─────────────────────────────────────────────────────────────
# ROUTES
# ─────────────────────────────────────────────────────────────

# ──────────────── POST /identify ── Single card ────────────────

@app.post("/identify")
async def identify(
    image: UploadFile = File(...),
    type_text: Optional[str] = Form(None),
    title_text: Optional[str] = Form(None),
    full_text: Optional[str] = Form(None),
    types: Optional[str] = Form(None),
    detect: bool = Form(True),
):
    """
    Identify one card photo.

    Form fields:
        image:       the photo (multipart)
        type_text, title_text, full_text:
                     OCR text if the client already has it; when all are
                     omitted the server runs EasyOCR on the crop
        types:       comma-separated active card types (default: all)
        detect:      find and crop the card first (default true); send false
                     for images that are already an upright card crop
    """
    img, err = await _read_upload(image)
    if err is not None:
        return err

    scanner = scanner_resources["scanner"]
    ocr = None
    if any(t is not None for t in (type_text, title_text, full_text)):
        ocr = OCRExtraction.from_text(full_text or "", type_text or "", title_text or "")

    try:
        if detect:
            report = await scanner.identify_photo(img, ocr=ocr, active_types=_parse_types(types))
        else:
            report = await scanner.identify_card(img, ocr=ocr, active_types=_parse_types(types))
    except CatalogUnavailable as e:
        logger.error("Identify failed: %s", e)
        return _error(str(e), 503)
    except Exception as e:
        logger.exception("Identify failed: %s", e)
        return _error(f"Identify failed: {e}", 500)

    return JSONResponse(content=report)


# ──────────────── POST /scan ── Multi-card ────────────────

@app.post("/scan")
async def scan(
    image: UploadFile = File(...),
    regions: str = Form(...),
    types: Optional[str] = Form(None),
):
    """
    Identify every card region in one photo.

    Form fields:
        image:   the full photo
        regions: JSON list of {"corners": [[x, y] x4], "type": ..., "text": ...}
                 in the photo's pixel coordinates
    """
    img, err = await _read_upload(image)
    if err is not None:
        return err

    try:
        detected = [DetectedRegion.from_dict(r) for r in json.loads(regions)]
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        return _error(f"Invalid regions: {e}", 400)

    try:
        results = await scanner_resources["scanner"].scan_regions(
            img, detected, active_types=_parse_types(types))
    except CatalogUnavailable as e:
        logger.error("Scan failed: %s", e)
        return _error(str(e), 503)
    except Exception as e:
        logger.exception("Scan failed: %s", e)
        return _error(f"Scan failed: {e}", 500)

    return JSONResponse(content={
        "count": len(results),
        "identified": sum(1 for r in results if r.get("result")),
        "results": results,
    })


# ──────────────── GET /api/status ────────────────

@app.get("/api/status")
async def api_status():
    scanner = scanner_resources["scanner"]
    index = scanner.index if scanner else None
    return JSONResponse(content={
        "index_loaded": bool(index and index.is_loaded),
        "index_size": len(index) if index else 0,
        "catalog_size": len(scanner.catalog) if scanner and scanner.catalog else 0,
        "ocr_loaded": bool(scanner and scanner.reader_loaded),
        "corrections": len(scanner_resources["corrections"] or ()),
        "card_types": list(CARD_TYPES),
        "thresholds": {
            "hash_match": HASH_MATCH_THRESHOLD,
            "hash_only_reject": HASH_ONLY_REJECT_DISTANCE,
            "text_weight": TEXT_WEIGHT,
            "hash_weight": HASH_WEIGHT,
        },
        "uptime_seconds": round(time.time() - start_time, 1),
    })


# ──────────────── /api/corrections ────────────────

@app.get("/api/corrections")
async def list_corrections():
    store = scanner_resources["corrections"]
    items = [c.__dict__ for c in store.all()]
    return JSONResponse(content={"count": len(items), "corrections": items})


@app.post("/api/corrections")
async def add_correction(request: Request):
    """
    Request body (JSON):
        { "computed_hash": "f0e1d2c3b4a59687", "corrected_card_id": "bernal-02",
          "original_card_id": "bernal-01", "original_confidence": 0.42,
          "scan_id": "...", "card_index": 0 }
    """
    try:
        body = await request.json()
    except ValueError:
        return _error("Body must be JSON", 400)

    if not isinstance(body, dict) or not body.get("computed_hash") \
            or not body.get("corrected_card_id"):
        return _error("computed_hash and corrected_card_id are required", 400)

    try:
        correction = ManualCorrection.from_dict(body)
    except (TypeError, ValueError) as e:
        return _error(f"Invalid correction: {e}", 400)

    store = scanner_resources["corrections"]
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, store.add, correction)
    return JSONResponse(content={"saved": correction.__dict__, "count": len(store)})


@app.delete("/api/corrections/{computed_hash}")
async def delete_correction(computed_hash: str):
    store = scanner_resources["corrections"]
    loop = asyncio.get_running_loop()
    removed = await loop.run_in_executor(None, store.remove, computed_hash)
    if not removed:
        return _error(f"No correction for {computed_hash}", 404)
    return JSONResponse(content={"removed": computed_hash, "count": len(store)})


# ─────────────────────────────────────────────────────────────
# CLI ENTRY POINT
# ─────────────────────────────────────────────────────────────

def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HF4A Card Scanner — FastAPI Server")
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Bind address (default: 127.0.0.1, use 0.0.0.0 for LAN access)",
    )
    parser.add_argument(
        "--port", type=int, default=8080,
        help="Port number (default: 8080)",
    )
    parser.add_argument(
        "--log-level", default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging level (default: info)",
    )
    return parser.parse_args()


def main():
    args = parse_args()
    logging.getLogger().setLevel(getattr(logging, args.log_level.upper()))

    logger.info("Starting HF4A Card Scanner server on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
