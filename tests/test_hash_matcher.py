"""Tests for nearest-neighbour hash matching."""

from __future__ import annotations

import logging

from hash_matcher import HashMatcher
from conftest import card_hash, flip_bits

ZERO = card_hash(0x00)


class TestHashMatcher:

    def test_exact_hash_is_distance_zero(self, index):
        candidates = HashMatcher(index).match(ZERO)
        assert candidates[0].card_id == "refinery-03"
        assert candidates[0].distance == 0
        assert candidates[0].score == 0.0

    def test_filters_by_threshold(self, index):
        # Every other card is at least 29 bits away
        candidates = HashMatcher(index).match(flip_bits(ZERO, 3))
        assert [c.card_id for c in candidates] == ["refinery-03"]
        assert candidates[0].distance == 3

    def test_threshold_is_inclusive(self, index):
        query = flip_bits(ZERO, 22)
        assert [c.distance for c in HashMatcher(index).match(query)] == [22]
        assert HashMatcher(index, threshold=21).match(query) == []

    def test_sorted_ascending_and_capped(self, index):
        matcher = HashMatcher(index, threshold=64, max_results=3)
        candidates = matcher.match(ZERO)
        distances = [c.distance for c in candidates]
        assert len(candidates) == 3
        assert distances == sorted(distances)
        assert distances[0] == 0

    def test_active_type_filter(self, index):
        assert HashMatcher(index).match(ZERO, active_types=["thruster"]) == []

    def test_trace_reports_nearest_regardless_of_threshold(self, index):
        query = flip_bits(ZERO, 30)
        candidates, trace = HashMatcher(index).match_with_trace(query)
        assert candidates == []
        assert trace["query_hex"] == "fffffffc00000000"
        assert len(trace["nearest"]) == 5
        assert trace["nearest"][0]["distance"] == 30
        assert trace["pool_size"] == len(index)

    def test_malformed_query_matches_nothing(self, index, caplog):
        with caplog.at_level(logging.WARNING):
            candidates, trace = HashMatcher(index).match_with_trace(b"\x00" * 4)
        assert candidates == []
        assert trace["query_hex"] is None
        assert trace["nearest"] == []
        # One warning for the query, not one per index entry
        malformed = [r for r in caplog.records if "Malformed" in r.getMessage()]
        assert len(malformed) == 1
        assert malformed[0].name == "hash_matcher"
