"""Tests for the phase-based fuzzy text matcher."""

from __future__ import annotations

import pytest

import text_matcher
from ocr import OCRExtraction
from text_matcher import (
    SearchPhase, TextMatcher, default_phases, match_quality, score_phrase,
)


def ocr(type_text="", title_text="", full_text=""):
    return OCRExtraction.from_text(full_text=full_text, type_text=type_text, title_text=title_text)


def _count_searches(monkeypatch):
    """Record every phrase the matcher runs a fuzzy search for."""
    searched = []
    real_extract = text_matcher.process.extract

    def counting_extract(query, *args, **kwargs):
        searched.append(query)
        return real_extract(query, *args, **kwargs)

    monkeypatch.setattr(text_matcher.process, "extract", counting_extract)
    return searched


class TestScoring:

    def test_exact_name_scores_zero(self):
        assert score_phrase("solar furnace", "solar furnace") == 0.0

    def test_partial_phrase_scores_worse_than_whole_name(self):
        assert score_phrase("solar", "solar furnace") > score_phrase("solar furnace", "solar furnace")

    def test_location_independent(self):
        # Name found inside noisy OCR text
        assert score_phrase("mass driver thrust", "mass driver") < 0.15

    def test_too_short_phrase_never_matches(self):
        assert score_phrase("s", "solar furnace") == 1.0

    @pytest.mark.parametrize("score,quality", [
        (0.0, "excellent"), (0.09, "excellent"), (0.10, "good"),
        (0.24, "good"), (0.25, "fair"), (0.39, "fair"), (0.40, "poor"),
    ])
    def test_match_quality_bands(self, score, quality):
        assert match_quality(score) == quality


class TestPhases:

    def test_default_phase_order(self):
        names = [p.name for p in default_phases()]
        assert names == [
            "typed-title", "typed-full-text", "typed-loose",
            "all-title", "all-full-text", "all-loose",
        ]

    def test_typed_title_bounds(self):
        typed_title = default_phases()[0]
        assert typed_title.accept_below == 0.30
        assert typed_title.reject_at == 0.40
        assert typed_title.regions == ("title",)


class TestMatch:

    def test_typed_title_short_circuit(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(
            ocr(type_text="Refinery", title_text="Solar Furnace"))

        assert candidates[0].card_id == "refinery-03"
        assert candidates[0].matched_on == "title"
        assert candidates[0].score == 0.0
        assert trace.detected_type == "refinery"
        assert trace.phases_tried == ["typed-title"]
        assert trace.accepted_phase == "typed-title"
        # Pool restricted to the two refinery cards
        assert trace.pool_size == 2
        assert all(c.type == "refinery" for c in candidates)

    def test_near_perfect_phrase_stops_the_phase(self, index, monkeypatch):
        searched = _count_searches(monkeypatch)
        text = ocr(type_text="Refinery", title_text="Solar Furnace")

        candidates = TextMatcher(index).match(text)
        assert candidates[0].card_id == "refinery-03"
        # "solar furnace" scores 0, so "solar" and "furnace" are never searched
        assert searched == ["solar furnace"]

    def test_without_near_perfect_hit_every_phrase_is_searched(self, index, monkeypatch):
        searched = _count_searches(monkeypatch)
        text = ocr(type_text="Refinery", title_text="Solar Furnace")

        candidates = TextMatcher(index, near_perfect=0.0).match(text)
        assert candidates[0].card_id == "refinery-03"
        assert searched == ["solar furnace", "solar", "furnace"]

    def test_ocr_type_variants_still_scope_search(self, index):
        _, trace = TextMatcher(index).match_with_trace(
            ocr(type_text="REFINER", title_text="Solar Furnace"))
        assert trace.detected_type == "refinery"
        assert trace.accepted_phase == "typed-title"

    def test_no_type_goes_straight_to_all_types(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(ocr(title_text="Mass Driver"))
        assert candidates[0].card_id == "thruster-05"
        assert trace.detected_type is None
        assert trace.phases_tried == ["all-title"]
        assert trace.pool_size == len(index)

    def test_inactive_detected_type_is_not_used(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(
            ocr(type_text="Refinery", title_text="Mass Driver"), active_types=["thruster"])
        assert trace.detected_type == "refinery"
        assert trace.phases_tried == ["all-title"]
        assert candidates[0].card_id == "thruster-05"

    def test_wrong_type_banner_falls_back_to_all_types(self, index):
        # Banner read as refinery, but the title is a thruster
        candidates, trace = TextMatcher(index).match_with_trace(
            ocr(type_text="Refinery", title_text="Mass Driver"))
        # No full text, so the typed full-text phase has nothing to search
        assert trace.phases_tried == ["typed-title", "typed-loose", "all-title"]
        assert trace.accepted_phase == "all-title"
        assert candidates[0].card_id == "thruster-05"

    def test_full_text_fallback(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(
            ocr(full_text="8 Mass Driver 3 thrust 1/2"))
        assert trace.accepted_phase == "all-full-text"
        assert candidates[0].card_id == "thruster-05"
        assert candidates[0].matched_on == "full_text"
        assert candidates[0].matched_phrase == "mass driver thrust"

    def test_typed_full_text_phase(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(
            ocr(type_text="Thruster", full_text="Solar Moth 1 mass"))
        assert trace.accepted_phase == "typed-full-text"
        assert candidates[0].card_id == "thruster-02"

    def test_gw_thruster_banner_is_not_read_as_thruster(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(
            ocr(type_text="GW Thruster", title_text="Z-Pinch Fusion"))
        assert trace.detected_type == "gw-thruster"
        assert candidates[0].card_id == "gw-thruster-01"

    def test_garbage_text_matches_nothing(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(
            ocr(title_text="qqqq xxxx", full_text="vvvv"))
        assert candidates == []
        assert trace.accepted_phase is None
        assert "all-loose" in trace.phases_tried

    def test_empty_ocr_tries_no_phase(self, index):
        candidates, trace = TextMatcher(index).match_with_trace(ocr())
        assert candidates == []
        assert trace.phases_tried == []

    def test_results_capped(self, index):
        matcher = TextMatcher(index, max_results=1)
        assert len(matcher.match(ocr(title_text="Solar"))) == 1

    def test_results_sorted_best_first(self, index):
        candidates = TextMatcher(index).match(ocr(title_text="Solar Furnace"))
        scores = [c.score for c in candidates]
        assert scores == sorted(scores)

    def test_no_active_entries(self, index):
        assert TextMatcher(index).match(ocr(title_text="Solar Furnace"), active_types=["exodus"]) == []

    def test_custom_phase_list(self, index):
        only_loose = [SearchPhase("loose", "all", ("title", "full_text"), 0.5)]
        candidates, trace = TextMatcher(index, phases=only_loose).match_with_trace(
            ocr(type_text="Refinery", title_text="Solar Furnace"))
        assert trace.phases_tried == ["loose"]
        assert candidates[0].card_id == "refinery-03"
        assert candidates[0].phase == "loose"
