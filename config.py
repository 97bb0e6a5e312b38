"""
config.py
Central configuration for the HF4A card scanner.
Overrides loaded from a .env file (not committed to git) or the environment.
"""

import os
from pathlib import Path

# ============================================
# Paths
# ============================================
BASE_DIR = Path(__file__).parent
DATA_DIR = BASE_DIR / "data"

# ============================================
# .env loader (no external dependency)
# ============================================
_env_path = BASE_DIR / ".env"
if _env_path.exists():
    with open(_env_path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                os.environ.setdefault(key.strip(), value.strip())


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


# Hash index + card catalog. Either a local path or an http(s):// URL.
CARD_INDEX_SOURCE = os.environ.get("CARD_INDEX_SOURCE", str(DATA_DIR / "card-index.json"))
CARDS_SOURCE = os.environ.get("CARDS_SOURCE", str(DATA_DIR / "cards.json"))
CORRECTIONS_FILE = Path(os.environ.get("CORRECTIONS_FILE", str(DATA_DIR / "corrections.json")))

# Timeout for fetching a remote index (seconds)
INDEX_FETCH_TIMEOUT = 10

# ============================================
# Card types
# ============================================
CARD_TYPES = (
    "thruster", "reactor", "generator", "radiator", "robonaut", "refinery",
    "crew",
    "gw-thruster", "freighter",
    "colonist", "bernal",
    "contract", "spaceborn",
    "exodus",
)

# Type keyword table for the OCR type banner. Checked in order, first hit wins.
# "gw thrust" must come before "thrust".
TYPE_PATTERNS = (
    (r"gw.?thrust", "gw-thruster"),
    (r"refiner", "refinery"),
    (r"thrust", "thruster"),
    (r"reactor", "reactor"),
    (r"radiat", "radiator"),
    (r"robonaut", "robonaut"),
    (r"generat", "generator"),
    (r"crew", "crew"),
    (r"colon", "colonist"),
    (r"freighter", "freighter"),
    (r"bernal", "bernal"),
    (r"contract", "contract"),
    (r"spaceborn", "spaceborn"),
    (r"exodus", "exodus"),
)

# ============================================
# Hash Matching Thresholds
# ============================================
HASH_BITS = 64
HASH_BYTES = 8

# Max Hamming distance for a hash candidate (~1/3 of the bits).
# Perspective-warped camera crops typically land at 14-25.
HASH_MATCH_THRESHOLD = _env_int("HASH_MATCH_THRESHOLD", 22)

# Stricter bound when the hash is the only signal
HASH_ONLY_REJECT_DISTANCE = _env_int("HASH_ONLY_REJECT_DISTANCE", 18)

# Hash-only matches at or under this distance (with no OCR text) get "medium"
HASH_ONLY_MEDIUM_DISTANCE = 15

HASH_MAX_RESULTS = 10
HASH_DEBUG_TOP_N = 5

# ============================================
# Text Matching
# ============================================
TEXT_MAX_RESULTS = 10
TEXT_MIN_MATCH_LENGTH = 2

# Phase thresholds (Fuse-style distance: 0 = perfect, 1 = no match)
TEXT_STRICT_ACCEPT = _env_float("TEXT_STRICT_ACCEPT", 0.30)
TEXT_STRICT_REJECT = _env_float("TEXT_STRICT_REJECT", 0.40)
TEXT_FULL_ACCEPT = _env_float("TEXT_FULL_ACCEPT", 0.40)
TEXT_LOOSE_ACCEPT = _env_float("TEXT_LOOSE_ACCEPT", 0.50)

# Stop scanning phrases within a phase once something this good shows up
TEXT_NEAR_PERFECT = 0.15

# Share of the similarity that comes from length coverage. Keeps a single
# token like "solar" from scoring as well as the whole name "Solar Furnace".
TEXT_COVERAGE_WEIGHT = 0.30

# Match quality bands for a text score
TEXT_QUALITY_EXCELLENT = 0.10
TEXT_QUALITY_GOOD = 0.25
TEXT_QUALITY_FAIR = 0.40

# Filler and stat-label words printed on cards. Nothing here may appear in a
# catalog name ("Mass Driver", "Solar Moth" rule out "mass" and "solar").
TEXT_STOP_WORDS = frozenset({
    "the", "and", "an", "to", "in", "on", "for", "with", "or",
    "rad", "hard", "radhard", "rad-hard", "therms", "isru",
    "afterburn", "pivots", "promote", "promotion", "future",
    "support", "supports", "kg", "per", "burn",
})

# Longest word window generated from one OCR text (tokens)
MAX_CANDIDATE_WINDOW = 6

# ============================================
# Fusion
# ============================================
TEXT_WEIGHT = _env_float("TEXT_WEIGHT", 0.85)
HASH_WEIGHT = _env_float("HASH_WEIGHT", 0.15)

# Both components above this → "fused" composite
FUSED_WEAK_COMPONENT = 0.30

# fusedScore banding when there is no text quality to go on
HIGH_CONFIDENCE_THRESHOLD = 0.25
MEDIUM_CONFIDENCE_THRESHOLD = 0.45

# OCR region text shorter than this counts as "no content"
OCR_MIN_CONTENT_CHARS = 3

# ============================================
# OCR Configuration
# ============================================
# Region crops as fractions of the card (y_start, y_end, x_start, x_end)
OCR_REGIONS = {
    "full":  {"y_start": 0.00, "y_end": 1.00, "x_start": 0.00, "x_end": 1.00},
    "type":  {"y_start": 0.00, "y_end": 0.15, "x_start": 0.00, "x_end": 1.00},
    "title": {"y_start": 0.80, "y_end": 1.00, "x_start": 0.00, "x_end": 1.00},
}

OCR_LANGUAGES = ["en"]
OCR_GPU = os.environ.get("OCR_GPU", "0") == "1"

# Minimum region width before OCR (upscaled if smaller)
OCR_REGION_MIN_WIDTH = 600
OCR_MIN_CONFIDENCE = 0.10

# ============================================
# Card Detection / Crop
# ============================================
# Minimum card width after perspective correction (ensures text is readable)
CARD_MIN_OUTPUT_WIDTH = 480

# HF4A cards are 63mm x 88mm
CARD_ASPECT = 63 / 88

# ============================================
# Grid Layout
# ============================================
# Gap between centres (as a fraction of average card size) that starts a new row/column
GRID_GAP_RATIO = 0.5
