"""Shared fixtures: a small HF4A card index with hand-picked hashes and synthetic card images."""

from __future__ import annotations

import asyncio

import cv2
import numpy as np
import pytest

from card_index import CardIndex
from catalog import CardCatalog
from image_hash import compute_hash, hash_to_hex

# Per-byte patterns differ pairwise in 4 of 8 bits, so the 64-bit hashes sit
# 32 bits apart (64 for the complementary pairs 00/FF and 0F/F0).
CARDS = [
    # card_id,         type,          name,                      side,     byte
    ("refinery-03",   "refinery",    "Solar Furnace",           "white",  0x00),
    ("refinery-01",   "refinery",    "Electrophoresis Sorter",  "white",  0xFF),
    ("thruster-02",   "thruster",    "Solar Moth",              "white",  0x0F),
    ("thruster-05",   "thruster",    "Mass Driver",             "white",  0xF0),
    ("robonaut-04",   "robonaut",    "Bucket Wheel",            "white",  0x33),
    ("gw-thruster-01", "gw-thruster", "Z-Pinch Fusion",         "purple", 0x55),
    ("bernal-01",     None,          "Gimbaled Torus",          "blue",   0x3C),
    ("reactor-02",    "reactor",     "Dusty Plasma Fission",    "white",  0x66),
]


def card_hash(byte):
    return bytes([byte] * 8)


def flip_bits(base: bytes, n: int) -> bytes:
    """Flip the first n bits (MSB-first) of an 8-byte hash."""
    value = int.from_bytes(base, "big")
    if n:
        value ^= ((1 << n) - 1) << (64 - n)
    return value.to_bytes(8, "big")


def make_raw_index(cards=CARDS):
    raw = []
    for card_id, card_type, name, side, byte in cards:
        h = card_hash(byte)
        entry = {
            "filename": f"{card_id}.webp",
            "cardId": card_id,
            "side": side,
            "name": name,
            "hash": hash_to_hex(h),
            "hashBytes": list(h),
        }
        if card_type is not None:
            entry["type"] = card_type
        raw.append(entry)
    return raw


def load_index(raw):
    index = CardIndex(source="memory://test", loader=lambda: raw)
    asyncio.run(index.load())
    return index


def make_card_image(seed: int, width: int = 315, height: int = 440) -> np.ndarray:
    """Blocky random BGR 'card' with a distinctive gradient pattern."""
    rng = np.random.default_rng(seed)
    blocks = rng.integers(20, 230, size=(8, 9, 3), dtype=np.uint8)
    return cv2.resize(blocks, (width, height), interpolation=cv2.INTER_NEAREST)


class FakeReader:
    """Stands in for easyocr.Reader: returns the same lines for every region."""

    def __init__(self, lines):
        self.lines = lines
        self.calls = 0

    def readtext(self, roi):
        self.calls += 1
        return [([[0, i * 10], [50, i * 10], [50, i * 10 + 8], [0, i * 10 + 8]], text, conf)
                for i, (text, conf) in enumerate(self.lines)]


@pytest.fixture
def raw_index():
    return make_raw_index()


@pytest.fixture
def index(raw_index):
    return load_index(raw_index)


@pytest.fixture
def catalog_records():
    return [
        {"id": "refinery-03", "type": "refinery", "name": "Solar Furnace", "side": "white",
         "filename": "refinery-03.webp", "relatedCards": {"black": "refinery-03b"}},
        {"id": "refinery-03b", "type": "refinery", "name": "Solar Furnace", "side": "black",
         "filename": "refinery-03b.webp", "relatedCards": {"white": "refinery-03"}},
        {"id": "thruster-05", "type": "thruster", "name": "Mass Driver", "side": "white",
         "filename": "thruster-05.webp",
         "relatedCards": {"black": "thruster-05b", "purple": "thruster-05p"}},
    ]


@pytest.fixture
def catalog(catalog_records):
    return CardCatalog(records=catalog_records)


@pytest.fixture
def card_images():
    """Two synthetic card images plus an index whose hashes are computed from them."""
    images = {"refinery-03": make_card_image(1), "thruster-05": make_card_image(2)}
    raw = make_raw_index()
    for entry in raw:
        if entry["cardId"] in images:
            h = compute_hash(images[entry["cardId"]])
            entry["hashBytes"] = list(h)
            entry["hash"] = hash_to_hex(h)
    return images, load_index(raw)
