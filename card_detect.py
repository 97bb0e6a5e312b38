"""
card_detect.py — Turn a card quadrilateral into an upright card crop.

Two entry points:
  - crop_region(img, corners): warp a known quadrilateral (from the
    detection collaborator in a multi-card scan) to a portrait crop
  - detect_and_crop_card(img): find the single card in a whole photo and
    crop it the same way

Both produce a 63:88 portrait image at least CARD_MIN_OUTPUT_WIDTH wide, so
the hash and OCR paths see the same geometry no matter where the corners
came from.

Detection pipeline (whole photo):
    1. Grayscale, no blur (phone cameras already denoise)
    2. Auto-Canny with thresholds at median ± sigma, three sigma passes
    3. Contour filter by area, solidity and aspect ratio
    4. 4 corners via approxPolyDP on the convex hull, minAreaRect fallback
    5. Perspective warp to portrait
"""

import logging

import cv2
import numpy as np

from config import CARD_ASPECT, CARD_MIN_OUTPUT_WIDTH

logger = logging.getLogger("card_detect")

# Auto-Canny sigma passes: tight, standard, permissive
_SIGMA_PASSES = [0.33, 0.50, 0.67]

# Aspect window for a card contour (short side / long side). 63/88 = 0.716
_ASPECT_RANGE = (0.55, 0.85)
_MIN_SOLIDITY = 0.75


def order_corners(pts):
    """
    Order 4 points as [TL, TR, BR, BL].

      TL = smallest (x+y)   BR = largest (x+y)
      TR = smallest (y-x)   BL = largest (y-x)
    """
    pts = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    rect = np.zeros((4, 2), dtype=np.float32)
    s = pts.sum(axis=1)
    rect[0] = pts[np.argmin(s)]
    rect[2] = pts[np.argmax(s)]
    d = np.diff(pts, axis=1)
    rect[1] = pts[np.argmin(d)]
    rect[3] = pts[np.argmax(d)]
    return rect


def _output_size(corners):
    """Portrait (width, height) for an ordered quad, scaled up for OCR."""
    tl, tr, br, bl = corners
    top = np.linalg.norm(tr - tl)
    bottom = np.linalg.norm(br - bl)
    left = np.linalg.norm(bl - tl)
    right = np.linalg.norm(br - tr)

    # The short edge is the card width whichever way the quad is rotated
    card_w = int(min(max(top, bottom), max(left, right)))
    card_w = max(card_w, CARD_MIN_OUTPUT_WIDTH)
    card_h = int(round(card_w / CARD_ASPECT))
    return card_w, card_h


def crop_region(img, corners):
    """
    Perspective-warp a card quadrilateral to an upright portrait crop.

    Args:
        img: BGR image the corners refer to
        corners: 4 (x, y) points in pixel coordinates, any order

    Returns:
        BGR card image, or None if the quad is degenerate
    """
    if img is None or img.size == 0:
        return None

    ordered = order_corners(corners)
    if cv2.contourArea(ordered) < 1.0:
        logger.warning("Degenerate card region %s, skipping", ordered.tolist())
        return None

    # Landscape quad: rotate the corner order so the long edge runs vertically
    tl, tr, br, bl = ordered
    if np.linalg.norm(tr - tl) > np.linalg.norm(bl - tl):
        ordered = np.array([bl, tl, tr, br], dtype=np.float32)

    card_w, card_h = _output_size(ordered)
    dst = np.array([
        [0, 0],
        [card_w - 1, 0],
        [card_w - 1, card_h - 1],
        [0, card_h - 1],
    ], dtype=np.float32)

    M = cv2.getPerspectiveTransform(ordered, dst)
    return cv2.warpPerspective(img, M, (card_w, card_h))


def detect_and_crop_card(img, min_area_ratio=0.05, max_area_ratio=0.995):
    """
    Find the card in a whole photo and return it perspective-corrected.

    Returns:
        (card_img, True) on success
        (img, False) if no card-shaped contour was found
    """
    if img is None or img.size == 0:
        return img, False

    h, w = img.shape[:2]
    gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY) if img.ndim == 3 else img
    v = np.median(gray)

    for sigma in _SIGMA_PASSES:
        lo = int(max(0, (1.0 - sigma) * v))
        hi = int(min(255, (1.0 + sigma) * v))

        corners = _find_card_corners(gray, lo, hi, h * w, min_area_ratio, max_area_ratio)
        if corners is not None:
            card = crop_region(img, corners)
            if card is not None:
                logger.info("Card detected: %dx%d crop, auto-canny sigma=%.2f (%d,%d)",
                            card.shape[1], card.shape[0], sigma, lo, hi)
                return card, True

    logger.info("No card detected in frame, using original image")
    return img, False


def _find_card_corners(gray, canny_lo, canny_hi, total_area, min_area_ratio, max_area_ratio):
    edges = cv2.Canny(gray, canny_lo, canny_hi)
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (5, 5))
    dilated = cv2.dilate(edges, kernel, iterations=2)

    contours, _ = cv2.findContours(dilated, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    contours = sorted(contours, key=cv2.contourArea, reverse=True)

    for cnt in contours[:10]:
        area = cv2.contourArea(cnt)
        area_ratio = area / total_area
        if not (min_area_ratio <= area_ratio <= max_area_ratio):
            continue

        rect = cv2.minAreaRect(cnt)
        rw, rh = rect[1]
        if rw == 0 or rh == 0:
            continue
        if area / (rw * rh) < _MIN_SOLIDITY:
            continue
        aspect = min(rw, rh) / max(rw, rh)
        if not (_ASPECT_RANGE[0] < aspect < _ASPECT_RANGE[1]):
            continue

        corners = _quad_from_contour(cnt, rect, area_ratio)
        if corners is not None:
            return corners

    return None


def _quad_from_contour(cnt, rect, area_ratio):
    """4 corners from the convex hull, or the minAreaRect box for large contours."""
    hull = cv2.convexHull(cnt)
    peri = cv2.arcLength(hull, True)

    for eps in (0.02, 0.03, 0.04, 0.05):
        approx = cv2.approxPolyDP(hull, eps * peri, True)
        if len(approx) == 4:
            return order_corners(approx.reshape(4, 2))

    if area_ratio >= 0.10:
        return order_corners(cv2.boxPoints(rect))
    return None
