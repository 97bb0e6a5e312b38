"""
image_hash.py
64-bit difference hash (dHash) for card images.

Used both when building the hash index and at scan time, so the two sides
must stay byte-for-byte identical:

  1. Resize to 9x8 pixels (bilinear, aspect ratio ignored)
  2. Grayscale with the standard luma weights 0.299R + 0.587G + 0.114B
  3. Per row, compare each of the 8 left pixels with its right neighbour
     (bit set when the left pixel is brighter)
  4. Pack the 64 bits MSB-first into 8 bytes

dHash tracks brightness gradients, so it shrugs off colour casts but moves a
lot on structural changes. Fine for flat printed cards shot near-frontally.

Hamming distance guide (out of 64):
  - 0:      identical
  - 1-14:   confident match
  - 15-22:  possible match (perspective warp, glare)
  - 23+:    different card
"""

import logging
from pathlib import Path

import cv2
import imagehash
import numpy as np
from PIL import Image

from config import HASH_BITS, HASH_BYTES

logger = logging.getLogger("image_hash")

HASH_WIDTH = 9
HASH_HEIGHT = 8

_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def _to_rgb_image(image):
    """Coerce a PIL image, OpenCV BGR array, grayscale array or path to a PIL image."""
    if isinstance(image, Image.Image):
        return image
    if isinstance(image, (str, Path)):
        return Image.open(image)
    if isinstance(image, np.ndarray):
        if image.ndim == 2:
            return Image.fromarray(image.astype(np.uint8))
        if image.shape[2] == 4:
            return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGRA2RGB))
        return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))
    raise TypeError(f"Unsupported image type: {type(image).__name__}")


def _gradient_bits(image):
    """Return the 8x8 boolean gradient matrix for an image."""
    img = _to_rgb_image(image).convert("RGB")
    small = img.resize((HASH_WIDTH, HASH_HEIGHT), Image.BILINEAR)
    rgb = np.asarray(small, dtype=np.float64)
    gray = rgb @ _LUMA
    return gray[:, :-1] > gray[:, 1:]


def compute_hash(image):
    """
    Compute the 64-bit dHash of an image.

    Args:
        image: PIL Image, OpenCV BGR/BGRA array, 2-D grayscale array, or path

    Returns:
        bytes of length 8
    """
    bits = _gradient_bits(image)
    return bytes(np.packbits(bits.flatten()))


def hamming_distance(hash1, hash2):
    """
    Count differing bits between two 8-byte hashes.

    Accepts bytes, bytearray or sequences of ints. Anything that is not
    exactly 8 bytes is a malformed hash and scores the maximum distance (64)
    rather than raising, so matching stays total.
    """
    if hash1 is None or hash2 is None or len(hash1) != HASH_BYTES or len(hash2) != HASH_BYTES:
        logger.warning(
            "Malformed hash (lengths %s/%s), treating as max distance",
            None if hash1 is None else len(hash1),
            None if hash2 is None else len(hash2),
        )
        return HASH_BITS

    distance = 0
    for a, b in zip(hash1, hash2):
        distance += bin((a ^ b) & 0xFF).count("1")
    return distance


def to_image_hash(hash_bytes):
    """Wrap 8 hash bytes as an imagehash.ImageHash (8x8 bool matrix)."""
    bits = np.unpackbits(np.frombuffer(bytes(hash_bytes), dtype=np.uint8))
    return imagehash.ImageHash(bits.astype(bool).reshape(HASH_HEIGHT, HASH_HEIGHT))


def hash_to_hex(hash_bytes):
    """16-character hex string for display and for the index's `hash` field."""
    return str(to_image_hash(hash_bytes))


def hex_to_bytes(hex_str):
    """Inverse of hash_to_hex()."""
    bits = imagehash.hex_to_hash(hex_str).hash
    return bytes(np.packbits(bits.flatten()))
