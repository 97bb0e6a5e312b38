"""
hash_matcher.py — Nearest-neighbour dHash lookup against the card index.
A linear scan is plenty at catalog scale (hundreds of card faces).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import HASH_BITS, HASH_BYTES, HASH_MATCH_THRESHOLD, HASH_MAX_RESULTS, HASH_DEBUG_TOP_N
from image_hash import hamming_distance, hash_to_hex

logger = logging.getLogger("hash_matcher")


@dataclass(frozen=True)
class HashMatchCandidate:
    card_id: str
    filename: str
    side: Optional[str]
    type: str
    name: str
    distance: int

    @property
    def score(self) -> float:
        """Distance normalised to 0-1 (0 = identical)."""
        return self.distance / HASH_BITS

    def to_dict(self):
        return {
            "card_id": self.card_id,
            "name": self.name,
            "type": self.type,
            "side": self.side,
            "distance": self.distance,
            "score": round(self.score, 4),
        }


class HashMatcher:

    def __init__(self, index, threshold=HASH_MATCH_THRESHOLD, max_results=HASH_MAX_RESULTS):
        self.index = index
        self.threshold = threshold
        self.max_results = max_results

    def match(self, query_hash, active_types=None):
        candidates, _ = self.match_with_trace(query_hash, active_types)
        return candidates

    def match_with_trace(self, query_hash, active_types=None):
        """
        Rank index entries by Hamming distance to query_hash.

        Returns:
            (candidates, trace) where candidates are ascending by distance,
            capped and filtered to distance <= threshold, and trace holds the
            query hex plus the nearest few distances regardless of threshold.
        """
        pool = self.index.filter_by_active_types(active_types)

        valid_query = query_hash is not None and len(query_hash) == HASH_BYTES
        if not valid_query:
            # Index hashes are validated at load, so one check covers every pair
            logger.warning("Malformed query hash (length %s), skipping hash match",
                           None if query_hash is None else len(query_hash))

        scored = []
        if valid_query:
            for entry in pool:
                d = hamming_distance(query_hash, entry.hash_bytes)
                scored.append((d, entry))
            scored.sort(key=lambda pair: pair[0])

        trace = {
            "query_hex": hash_to_hex(query_hash) if valid_query else None,
            "pool_size": len(pool),
            "threshold": self.threshold,
            "nearest": [
                {"card_id": e.card_id, "distance": d}
                for d, e in scored[:HASH_DEBUG_TOP_N]
            ],
        }

        candidates = [
            HashMatchCandidate(
                card_id=e.card_id,
                filename=e.filename,
                side=e.side,
                type=e.type,
                name=e.name,
                distance=d,
            )
            for d, e in scored
            if d <= self.threshold
        ][:self.max_results]

        if candidates:
            logger.debug("Hash best: %s (d=%d), %d within threshold %d",
                         candidates[0].card_id, candidates[0].distance,
                         len(candidates), self.threshold)
        elif scored:
            logger.debug("No hash match within %d (nearest %s d=%d)",
                         self.threshold, scored[0][1].card_id, scored[0][0])

        return candidates, trace
