"""
text_matcher.py — Fuzzy card-name search driven by OCR text.

Search runs as an ordered list of phases, strictest first, and stops at the
first phase whose best score clears that phase's acceptance bound:

  typed-title      detected type only, title phrases,          accept < 0.30
  typed-full-text  detected type only, full-text phrases,      accept < 0.40
  typed-loose      detected type only, title + full phrases,   accept < 0.50
  all-title        every active type, title phrases,           accept < 0.30
  all-full-text    every active type, full-text phrases,       accept < 0.40
  all-loose        every active type, title + full phrases,    accept < 0.50

Typed phases only run when the type banner parses to an active type.

Scores follow the Fuse convention (0 = perfect, 1 = no match). Each phrase
is aligned anywhere inside the card name (rapidfuzz partial_ratio), and the
similarity is weighted by how much of the name the phrase covers so that
"solar" alone never ties with "solar furnace".
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from rapidfuzz import fuzz, process, utils

from config import (
    TEXT_MAX_RESULTS, TEXT_MIN_MATCH_LENGTH, TEXT_NEAR_PERFECT,
    TEXT_STRICT_ACCEPT, TEXT_STRICT_REJECT, TEXT_FULL_ACCEPT, TEXT_LOOSE_ACCEPT,
    TEXT_COVERAGE_WEIGHT, TEXT_QUALITY_EXCELLENT, TEXT_QUALITY_GOOD, TEXT_QUALITY_FAIR,
)
from ocr import parse_type_from_text
from text_candidates import generate_candidates

logger = logging.getLogger("text_matcher")

REGION_TITLE = "title"
REGION_FULL_TEXT = "full_text"

SCOPE_TYPED = "typed"
SCOPE_ALL = "all"


def match_quality(score):
    """Ordinal quality for a text score: excellent / good / fair / poor."""
    if score < TEXT_QUALITY_EXCELLENT:
        return "excellent"
    if score < TEXT_QUALITY_GOOD:
        return "good"
    if score < TEXT_QUALITY_FAIR:
        return "fair"
    return "poor"


def score_phrase(phrase, name):
    """
    Distance between a search phrase and a card name (0 = perfect).
    Both strings are expected to be pre-processed (lowercase, no punctuation).
    """
    if len(phrase) < TEXT_MIN_MATCH_LENGTH or not name:
        return 1.0
    partial = fuzz.partial_ratio(phrase, name) / 100.0
    return _weighted_score(partial, phrase, name)


def _weighted_score(partial, phrase, name):
    coverage = min(len(phrase), len(name)) / max(len(phrase), len(name))
    similarity = partial * ((1.0 - TEXT_COVERAGE_WEIGHT) + TEXT_COVERAGE_WEIGHT * coverage)
    return round(1.0 - similarity, 4)


@dataclass(frozen=True)
class SearchPhase:
    """
    One step of the search strategy.

    Args:
        name: label reported in traces
        scope: "typed" (detected type only) or "all" (every active type)
        regions: OCR regions whose phrases are searched, in order
        accept_below: phase accepts when its best score is below this
        reject_at: candidates scoring at or above this are dropped
    """
    name: str
    scope: str
    regions: tuple
    accept_below: float
    reject_at: float = TEXT_LOOSE_ACCEPT


def default_phases():
    phases = []
    for scope in (SCOPE_TYPED, SCOPE_ALL):
        phases.extend([
            SearchPhase(f"{scope}-title", scope, (REGION_TITLE,),
                        TEXT_STRICT_ACCEPT, TEXT_STRICT_REJECT),
            SearchPhase(f"{scope}-full-text", scope, (REGION_FULL_TEXT,),
                        TEXT_FULL_ACCEPT),
            SearchPhase(f"{scope}-loose", scope, (REGION_TITLE, REGION_FULL_TEXT),
                        TEXT_LOOSE_ACCEPT),
        ])
    return tuple(phases)


@dataclass(frozen=True)
class TextMatchCandidate:
    card_id: str
    filename: str
    side: Optional[str]
    type: str
    name: str
    score: float
    matched_on: str
    matched_phrase: str
    phase: str

    @property
    def match_quality(self):
        return match_quality(self.score)

    def to_dict(self):
        return {
            "card_id": self.card_id,
            "name": self.name,
            "type": self.type,
            "side": self.side,
            "score": self.score,
            "matched_on": self.matched_on,
            "matched_phrase": self.matched_phrase,
            "phase": self.phase,
            "match_quality": self.match_quality,
        }


@dataclass
class TextSearchTrace:
    """What the search did, for diagnostics."""
    detected_type: Optional[str] = None
    phases_tried: list = field(default_factory=list)
    accepted_phase: Optional[str] = None
    pool_size: int = 0
    phase_details: list = field(default_factory=list)

    def to_dict(self):
        return {
            "detected_type": self.detected_type,
            "phases_tried": list(self.phases_tried),
            "accepted_phase": self.accepted_phase,
            "pool_size": self.pool_size,
            "phases": list(self.phase_details),
        }


class TextMatcher:
    """
    Multi-phase fuzzy search over a loaded CardIndex.

    Usage:
        matcher = TextMatcher(index)        # index.load() already awaited
        candidates = matcher.match(ocr, active_types={"refinery", "thruster"})
    """

    def __init__(self, index, phases=None, max_results=TEXT_MAX_RESULTS,
                 near_perfect=TEXT_NEAR_PERFECT):
        self.index = index
        self.phases = tuple(phases) if phases is not None else default_phases()
        self.max_results = max_results
        self.near_perfect = near_perfect

    def match(self, ocr, active_types=None):
        candidates, _ = self.match_with_trace(ocr, active_types)
        return candidates

    def match_with_trace(self, ocr, active_types=None):
        """
        Args:
            ocr: OCRExtraction (only full_text / type_text / title_text are read)
            active_types: iterable of type keys to search, or None for all

        Returns:
            (list of TextMatchCandidate best first, TextSearchTrace)
        """
        trace = TextSearchTrace()
        active_pool = self.index.filter_by_active_types(active_types)
        if not active_pool:
            logger.warning("No active card types to match against")
            return [], trace

        detected = parse_type_from_text(ocr.type_text)
        trace.detected_type = detected
        typed_pool = ()
        if detected and (active_types is None or detected in set(active_types)):
            typed_pool = tuple(e for e in active_pool if e.type == detected)
        logger.debug("Detected type: %s (%d typed entries)", detected or "unknown", len(typed_pool))

        phrases = {
            REGION_TITLE: generate_candidates(ocr.title_text),
            REGION_FULL_TEXT: generate_candidates(ocr.full_text),
        }

        for phase in self.phases:
            pool = typed_pool if phase.scope == SCOPE_TYPED else active_pool
            tagged = [(region, p) for region in phase.regions for p in phrases[region]]
            if not pool or not tagged:
                continue

            trace.phases_tried.append(phase.name)
            trace.pool_size = len(pool)
            results = self._search(pool, tagged, phase)
            best = results[0].score if results else None
            trace.phase_details.append({
                "name": phase.name,
                "pool_size": len(pool),
                "phrases": len(tagged),
                "best_score": best,
            })

            if results and best < phase.accept_below:
                trace.accepted_phase = phase.name
                logger.debug("Phase %s hit: %s (score: %.3f, phrase '%s')",
                             phase.name, results[0].card_id, best, results[0].matched_phrase)
                return results[:self.max_results], trace

            logger.debug("Phase %s: no acceptable match (best %s)",
                         phase.name, "none" if best is None else f"{best:.3f}")

        logger.debug("No text matches found")
        return [], trace

    def _search(self, pool, tagged_phrases, phase):
        """Best score per entry over all phrases, filtered by the phase reject bound."""
        names = [utils.default_process(e.name) for e in pool]
        best = {}

        for region, phrase in tagged_phrases:
            query = utils.default_process(phrase)
            if len(query) < TEXT_MIN_MATCH_LENGTH:
                continue

            hits = process.extract(query, names, scorer=fuzz.partial_ratio,
                                   processor=None, limit=None)
            for _, partial, i in hits:
                score = _weighted_score(partial / 100.0, query, names[i]) if names[i] else 1.0
                current = best.get(i)
                if current is None or score < current[0]:
                    best[i] = (score, region, phrase)

            if best and min(v[0] for v in best.values()) < self.near_perfect:
                break

        results = []
        for i, (score, region, phrase) in sorted(best.items()):
            if score >= phase.reject_at:
                continue
            entry = pool[i]
            results.append(TextMatchCandidate(
                card_id=entry.card_id,
                filename=entry.filename,
                side=entry.side,
                type=entry.type,
                name=entry.name,
                score=score,
                matched_on=region,
                matched_phrase=phrase,
                phase=phase.name,
            ))

        # Stable on pool order for equal scores
        results.sort(key=lambda c: c.score)
        return results
