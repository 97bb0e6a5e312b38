"""
match_fusion.py — Combine text and hash signals into one identification.

Text matching carries most of the weight (OCR'd names are a far stronger
signal than a coarse 64-bit hash in a catalog full of look-alike card faces);
the hash breaks ties and rescues scans where OCR read nothing useful.

Decision table:
  - no text, no hash candidates  -> None (no_signal)
  - text only                    -> best text candidate, tier from text quality
  - hash only                    -> accepted only within HASH_ONLY_REJECT_DISTANCE,
                                    otherwise None (rejected_low_confidence)
  - both                         -> join on card_id, weighted sum, lowest wins

Every path fills a FusionDiagnostics so a null result can be explained.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from config import (
    TEXT_WEIGHT, HASH_WEIGHT, HASH_ONLY_REJECT_DISTANCE, HASH_ONLY_MEDIUM_DISTANCE,
    FUSED_WEAK_COMPONENT, HIGH_CONFIDENCE_THRESHOLD, MEDIUM_CONFIDENCE_THRESHOLD,
)
from hash_matcher import HashMatcher
from text_matcher import TextMatcher

logger = logging.getLogger("fusion")

SIGNAL_TEXT = "text"
SIGNAL_HASH = "hash"

# Score used for a signal that has no candidate for a card
MISSING_SIGNAL_SCORE = 1.0

METHOD_WEIGHTED = "weighted"
METHOD_TEXT_ONLY = "text-only"
METHOD_HASH_ONLY = "hash-only"
METHOD_NONE = "none"

REJECT_NO_SIGNAL = "no_signal"
REJECT_LOW_CONFIDENCE = "rejected_low_confidence"

QUALITY_CONFIDENCE = {
    "excellent": "high",
    "good": "high",
    "fair": "medium",
    "poor": "low",
}


def confidence_from_quality(quality):
    return QUALITY_CONFIDENCE.get(quality, "low")


def confidence_from_score(fused_score):
    if fused_score < HIGH_CONFIDENCE_THRESHOLD:
        return "high"
    if fused_score < MEDIUM_CONFIDENCE_THRESHOLD:
        return "medium"
    return "low"


def fuse_scores(scores, weights):
    """
    Weighted sum over the weight table. A signal with no score for this card
    counts as MISSING_SIGNAL_SCORE.
    """
    return sum(weight * scores.get(signal, MISSING_SIGNAL_SCORE)
               for signal, weight in weights.items())


def classify_source(text_score, hash_score):
    """Which signal carried the match: "text", "hash", or "fused" when both are weak."""
    if text_score > FUSED_WEAK_COMPONENT and hash_score > FUSED_WEAK_COMPONENT:
        return "fused"
    return SIGNAL_TEXT if text_score <= hash_score else SIGNAL_HASH


@dataclass(frozen=True)
class IdentificationResult:
    card_id: str
    filename: str
    side: Optional[str]
    type: str
    name: str
    fused_score: float
    text_score: float
    hash_score: float
    match_source: str
    confidence: str
    text_match_quality: str = "none"
    hash_distance: Optional[int] = None

    def to_dict(self):
        return {
            "card_id": self.card_id,
            "filename": self.filename,
            "side": self.side,
            "type": self.type,
            "name": self.name,
            "fused_score": round(self.fused_score, 4),
            "text_score": round(self.text_score, 4),
            "hash_score": round(self.hash_score, 4),
            "match_source": self.match_source,
            "confidence": self.confidence,
            "text_match_quality": self.text_match_quality,
            "hash_distance": self.hash_distance,
        }


@dataclass
class FusionDiagnostics:
    text_matches: list = field(default_factory=list)
    hash_matches: list = field(default_factory=list)
    text_weight: float = TEXT_WEIGHT
    hash_weight: float = HASH_WEIGHT
    fusion_method: str = METHOD_WEIGHTED
    ocr_had_content: bool = False
    text_trace: Optional[object] = None
    hash_trace: Optional[dict] = None
    rejection_reason: Optional[str] = None
    rejection: Optional[str] = None

    def to_dict(self):
        return {
            "text_matches": [c.to_dict() for c in self.text_matches],
            "hash_matches": [c.to_dict() for c in self.hash_matches],
            "text_weight": self.text_weight,
            "hash_weight": self.hash_weight,
            "fusion_method": self.fusion_method,
            "ocr_had_content": self.ocr_had_content,
            "text_trace": self.text_trace.to_dict() if self.text_trace else None,
            "hash_trace": self.hash_trace,
            "rejection_reason": self.rejection_reason,
            "rejection": self.rejection,
        }


class MatchFusion:
    """
    Identification entry point for one card region.

    Usage:
        fusion = MatchFusion(index)
        result = await fusion.identify(ocr, compute_hash(crop), active_types)
        result, diag = await fusion.identify_with_diagnostics(ocr, hash_bytes)
    """

    def __init__(self, index, text_matcher=None, hash_matcher=None,
                 text_weight=TEXT_WEIGHT, hash_weight=HASH_WEIGHT,
                 hash_only_reject=HASH_ONLY_REJECT_DISTANCE,
                 hash_only_medium=HASH_ONLY_MEDIUM_DISTANCE):
        self.index = index
        self.text_matcher = text_matcher or TextMatcher(index)
        self.hash_matcher = hash_matcher or HashMatcher(index)
        self.weights = {SIGNAL_TEXT: text_weight, SIGNAL_HASH: hash_weight}
        self.hash_only_reject = hash_only_reject
        self.hash_only_medium = hash_only_medium

    async def identify(self, ocr, query_hash, active_types=None):
        result, _ = await self.identify_with_diagnostics(ocr, query_hash, active_types)
        return result

    async def identify_with_diagnostics(self, ocr, query_hash, active_types=None):
        """
        Run both matchers concurrently and fuse.

        Args:
            ocr: OCRExtraction
            query_hash: 8-byte dHash of the card crop, or None if there's no image
            active_types: type keys to search, or None for all

        Returns:
            (IdentificationResult or None, FusionDiagnostics)

        Raises:
            CatalogUnavailable if the card index can't be loaded
        """
        await self.index.load()
        loop = asyncio.get_running_loop()

        text_task = loop.run_in_executor(None, self.text_matcher.match_with_trace, ocr, active_types)
        if query_hash is not None:
            hash_task = loop.run_in_executor(None, self.hash_matcher.match_with_trace,
                                             query_hash, active_types)
        else:
            hash_task = _completed(([], None))

        (text_matches, text_trace), (hash_matches, hash_trace) = await asyncio.gather(
            text_task, hash_task)

        diag = FusionDiagnostics(
            text_matches=text_matches,
            hash_matches=hash_matches,
            text_weight=self.weights[SIGNAL_TEXT],
            hash_weight=self.weights[SIGNAL_HASH],
            ocr_had_content=ocr.has_content,
            text_trace=text_trace,
            hash_trace=hash_trace,
        )
        return self.fuse(text_matches, hash_matches, diag), diag

    # ─── Decision table ───

    def fuse(self, text_matches, hash_matches, diag):
        """Apply the decision table to already-computed candidate lists."""
        if not text_matches and not hash_matches:
            diag.fusion_method = METHOD_NONE
            diag.rejection = REJECT_NO_SIGNAL
            nearest = (diag.hash_trace or {}).get("nearest")
            if nearest:
                # Nothing within the matcher threshold, but say how close the hash got
                diag.rejection_reason = self._weak_hash_reason(nearest[0]["distance"], diag)
            else:
                diag.rejection_reason = "No signal: no text or hash matches found"
            logger.info("No matches from either method: %s", diag.rejection_reason)
            return None

        if not hash_matches:
            diag.fusion_method = METHOD_TEXT_ONLY
            return self._text_only(text_matches[0])

        if not text_matches:
            diag.fusion_method = METHOD_HASH_ONLY
            return self._hash_only(hash_matches[0], diag)

        diag.fusion_method = METHOD_WEIGHTED
        return self._weighted(text_matches, hash_matches)

    def _text_only(self, best):
        logger.info("Text-only match: %s (score %.3f, %s)",
                    best.card_id, best.score, best.match_quality)
        return IdentificationResult(
            card_id=best.card_id,
            filename=best.filename,
            side=best.side,
            type=best.type,
            name=best.name,
            fused_score=best.score,
            text_score=best.score,
            hash_score=MISSING_SIGNAL_SCORE,
            match_source=SIGNAL_TEXT,
            confidence=confidence_from_quality(best.match_quality),
            text_match_quality=best.match_quality,
        )

    def _weak_hash_reason(self, distance, diag):
        if diag.ocr_had_content:
            return (f"OCR had content but text match failed, hash too weak "
                    f"(d={distance} > {self.hash_only_reject})")
        return f"No OCR content, hash too weak (d={distance} > {self.hash_only_reject})"

    def _hash_only(self, best, diag):
        # A hash with no corroborating text needs a tighter bound than the
        # matcher's own threshold, whether or not OCR read anything.
        if best.distance > self.hash_only_reject:
            reason = self._weak_hash_reason(best.distance, diag)
            diag.rejection = REJECT_LOW_CONFIDENCE
            diag.rejection_reason = reason
            logger.info("Rejecting: %s", reason)
            return None

        if diag.ocr_had_content:
            confidence = "low"
        else:
            confidence = "medium" if best.distance <= self.hash_only_medium else "low"

        logger.info("Hash-only match: %s (d=%d, %s)", best.card_id, best.distance, confidence)
        return IdentificationResult(
            card_id=best.card_id,
            filename=best.filename,
            side=best.side,
            type=best.type,
            name=best.name,
            fused_score=best.score,
            text_score=MISSING_SIGNAL_SCORE,
            hash_score=best.score,
            match_source=SIGNAL_HASH,
            confidence=confidence,
            hash_distance=best.distance,
        )

    def _weighted(self, text_matches, hash_matches):
        # Join both candidate lists on card_id. Insertion order is text first,
        # so on equal fused scores the earlier candidate wins.
        joined = {}
        for signal, candidates in ((SIGNAL_TEXT, text_matches), (SIGNAL_HASH, hash_matches)):
            for c in candidates:
                slot = joined.setdefault(c.card_id, {"card": c, "scores": {}, "signals": {}})
                if signal not in slot["scores"]:
                    slot["scores"][signal] = c.score
                    slot["signals"][signal] = c

        best_id, best_fused = None, None
        for card_id, slot in joined.items():
            fused = fuse_scores(slot["scores"], self.weights)
            if best_fused is None or fused < best_fused:
                best_id, best_fused = card_id, fused

        slot = joined[best_id]
        card = slot["card"]
        text_score = slot["scores"].get(SIGNAL_TEXT, MISSING_SIGNAL_SCORE)
        hash_score = slot["scores"].get(SIGNAL_HASH, MISSING_SIGNAL_SCORE)
        text_hit = slot["signals"].get(SIGNAL_TEXT)
        hash_hit = slot["signals"].get(SIGNAL_HASH)

        if text_hit is not None:
            quality = text_hit.match_quality
            confidence = confidence_from_quality(quality)
        else:
            quality = "none"
            confidence = confidence_from_score(best_fused)

        result = IdentificationResult(
            card_id=best_id,
            filename=card.filename,
            side=card.side,
            type=card.type,
            name=card.name,
            fused_score=best_fused,
            text_score=text_score,
            hash_score=hash_score,
            match_source=classify_source(text_score, hash_score),
            confidence=confidence,
            text_match_quality=quality,
            hash_distance=hash_hit.distance if hash_hit is not None else None,
        )
        logger.info("Best match: %s (fused: %.3f, text: %.3f, hash: %.3f, %s)",
                    best_id, best_fused, text_score, hash_score, result.match_source)
        return result


def _completed(value):
    future = asyncio.get_running_loop().create_future()
    future.set_result(value)
    return future

