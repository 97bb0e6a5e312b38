"""
corrections.py — Manual identification corrections, persisted as JSON.

When a scan misidentifies a card the user picks the right one; the correction
is stored under the scanned region's computed hash (hex) so later scans of the
same physical card can look it up, and the set doubles as labelled data for
tuning the match thresholds.

File format: {"<computed_hash>": {timestamp, computed_hash, ...}, ...}
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Optional

from config import CORRECTIONS_FILE

logger = logging.getLogger("corrections")


@dataclass
class ManualCorrection:
    computed_hash: str
    corrected_card_id: str
    original_card_id: Optional[str] = None
    original_confidence: float = 0.0
    scan_id: str = ""
    card_index: int = 0
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data):
        return cls(
            computed_hash=data["computed_hash"],
            corrected_card_id=data["corrected_card_id"],
            original_card_id=data.get("original_card_id"),
            original_confidence=float(data.get("original_confidence") or 0.0),
            scan_id=data.get("scan_id") or "",
            card_index=int(data.get("card_index") or 0),
            timestamp=float(data.get("timestamp") or time.time()),
        )


class CorrectionsStore:
    """
    Corrections keyed by computed hash. One correction per hash; a new one
    replaces the old.

    Usage:
        store = CorrectionsStore("data/corrections.json")
        store.add(ManualCorrection(computed_hash="f0e1...", corrected_card_id="bernal-02"))
        store.get("f0e1...")
    """

    def __init__(self, path=CORRECTIONS_FILE):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._corrections = {}
        self._load()

    def _load(self):
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self._corrections = {k: ManualCorrection.from_dict(v) for k, v in raw.items()}
            logger.info("Loaded %d corrections from %s", len(self._corrections), self.path)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Corrupt corrections file %s: %s (starting empty)", self.path, e)
            self._corrections = {}

    def _save(self):
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({k: asdict(v) for k, v in self._corrections.items()}, f, indent=2)
        os.replace(tmp, self.path)

    def __len__(self):
        return len(self._corrections)

    def add(self, correction):
        with self._lock:
            self._corrections[correction.computed_hash] = correction
            self._save()
        logger.info("Correction: %s -> %s (was %s)", correction.computed_hash,
                    correction.corrected_card_id, correction.original_card_id)
        return correction

    def get(self, computed_hash):
        return self._corrections.get(computed_hash)

    def remove(self, computed_hash):
        """Returns True if a correction was removed."""
        with self._lock:
            removed = self._corrections.pop(computed_hash, None) is not None
            if removed:
                self._save()
        return removed

    def clear(self):
        with self._lock:
            self._corrections = {}
            self._save()

    def all(self):
        return sorted(self._corrections.values(), key=lambda c: c.timestamp)
