"""Tests for CardIndex loading, validation and lookup."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time

import pytest
import requests

import card_index
from card_index import CardIndex, CatalogUnavailable, parse_index, type_from_card_id
from conftest import make_raw_index


class CountingLoader:
    def __init__(self, data, delay=0.05):
        self.data = data
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        return self.data


class TestLoad:

    def test_concurrent_first_loads_share_one_fetch(self, raw_index):
        loader = CountingLoader(raw_index)
        index = CardIndex(loader=loader)

        async def run():
            return await asyncio.gather(*[index.load() for _ in range(5)])

        results = asyncio.run(run())
        assert loader.calls == 1
        assert index.fetch_count == 1
        assert all(r is results[0] for r in results)
        assert len(results[0]) == len(raw_index)

    def test_repeat_load_returns_same_tuple(self, raw_index):
        loader = CountingLoader(raw_index, delay=0)
        index = CardIndex(loader=loader)

        async def run():
            first = await index.load()
            second = await index.load()
            return first, second

        first, second = asyncio.run(run())
        assert first is second
        assert loader.calls == 1

    def test_loader_failure_raises_catalog_unavailable(self):
        def broken():
            raise OSError("disk on fire")

        index = CardIndex(loader=broken)
        with pytest.raises(CatalogUnavailable) as exc:
            asyncio.run(index.load())
        assert isinstance(exc.value.__cause__, OSError)
        assert not index.is_loaded

    def test_failed_load_can_be_retried(self, raw_index):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise ValueError("truncated JSON")
            return raw_index

        index = CardIndex(loader=flaky)
        with pytest.raises(CatalogUnavailable):
            asyncio.run(index.load())
        entries = asyncio.run(index.load())
        assert len(entries) == len(raw_index)
        assert len(attempts) == 2

    def test_cancelled_first_caller_leaves_load_running(self, raw_index):
        loader = CountingLoader(raw_index, delay=0.1)
        index = CardIndex(loader=loader)

        async def run():
            first = asyncio.ensure_future(index.load())
            await asyncio.sleep(0.02)
            first.cancel()
            with pytest.raises(asyncio.CancelledError):
                await first
            return await index.load()

        entries = asyncio.run(run())
        assert len(entries) == len(raw_index)
        assert index.is_loaded
        assert loader.calls == 1

    def test_unexpected_loader_error_can_be_retried(self, raw_index):
        attempts = []

        def buggy():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("loader bug")
            return raw_index

        index = CardIndex(loader=buggy)
        with pytest.raises(RuntimeError):
            asyncio.run(index.load())
        entries = asyncio.run(index.load())
        assert len(entries) == len(raw_index)
        assert len(attempts) == 2

    def test_loads_local_json_file(self, tmp_path, raw_index):
        path = tmp_path / "card-index.json"
        path.write_text(json.dumps(raw_index))
        index = CardIndex(path)
        entries = asyncio.run(index.load())
        assert len(entries) == len(raw_index)

    def test_missing_file_is_catalog_unavailable(self, tmp_path):
        index = CardIndex(tmp_path / "nope.json")
        with pytest.raises(CatalogUnavailable):
            asyncio.run(index.load())

    def test_fetches_url_with_requests(self, monkeypatch, raw_index):
        calls = []

        class FakeResponse:
            def raise_for_status(self):
                pass

            def json(self):
                return raw_index

        def fake_get(url, timeout):
            calls.append((url, timeout))
            return FakeResponse()

        monkeypatch.setattr(card_index.requests, "get", fake_get)
        index = CardIndex("https://example.org/data/card-index.json")
        asyncio.run(index.load())
        assert len(index) == len(raw_index)
        assert calls[0][0] == "https://example.org/data/card-index.json"

    def test_http_error_is_catalog_unavailable(self, monkeypatch):
        def fake_get(url, timeout):
            raise requests.ConnectionError("offline")

        monkeypatch.setattr(card_index.requests, "get", fake_get)
        index = CardIndex("http://example.org/card-index.json")
        with pytest.raises(CatalogUnavailable):
            asyncio.run(index.load())


class TestParse:

    def test_rejects_non_array(self):
        with pytest.raises(CatalogUnavailable):
            parse_index({"cards": []})

    def test_rejects_short_hash_bytes(self, raw_index):
        raw_index[0]["hashBytes"] = [0] * 7
        with pytest.raises(CatalogUnavailable):
            parse_index(raw_index)

    def test_rejects_out_of_range_hash_bytes(self, raw_index):
        raw_index[0]["hashBytes"] = [0] * 7 + [256]
        with pytest.raises(CatalogUnavailable):
            parse_index(raw_index)

    def test_rejects_duplicate_card_ids(self, raw_index):
        raw_index.append(dict(raw_index[0]))
        with pytest.raises(CatalogUnavailable):
            parse_index(raw_index)

    @pytest.mark.parametrize("field,value", [
        ("hash", 12345),
        ("type", 7),
        ("name", ["Solar", "Furnace"]),
        ("side", 1),
        ("filename", {"path": "refinery-03.webp"}),
    ])
    def test_non_string_fields_are_catalog_unavailable(self, raw_index, field, value):
        raw_index[0][field] = value
        with pytest.raises(CatalogUnavailable, match="refinery-03"):
            parse_index(raw_index)

    def test_bad_entry_does_not_stick_to_the_index(self, raw_index):
        bad = [dict(e) for e in raw_index]
        bad[0]["type"] = 7
        sources = [bad, raw_index]
        index = CardIndex(loader=lambda: sources.pop(0))

        with pytest.raises(CatalogUnavailable):
            asyncio.run(index.load())
        assert len(asyncio.run(index.load())) == len(raw_index)

    def test_hex_mismatch_warns_and_keeps_hash_bytes(self, raw_index, caplog):
        raw_index[0]["hash"] = "ffffffffffffffff"
        with caplog.at_level(logging.WARNING, logger="card_index"):
            entries = parse_index(raw_index)
        assert entries[0].hash_bytes == bytes(raw_index[0]["hashBytes"])
        assert "disagrees" in caplog.text

    def test_missing_type_is_derived_from_card_id(self, raw_index):
        entries = parse_index(raw_index)
        bernal = [e for e in entries if e.card_id == "bernal-01"][0]
        assert bernal.type == "bernal"

    @pytest.mark.parametrize("card_id,expected", [
        ("bernal-01", "bernal"),
        ("gw-thruster-07", "gw-thruster"),
        ("refinery-12b", "refinery"),
        ("Crew-3", "crew"),
    ])
    def test_type_from_card_id(self, card_id, expected):
        assert type_from_card_id(card_id) == expected


class TestLookup:

    def test_find_by_id(self, index):
        entry = index.find_by_id("refinery-03")
        assert entry.name == "Solar Furnace"
        assert entry.hash_hex == "0000000000000000"
        assert index.find_by_id("nope-01") is None

    def test_filter_by_type(self, index):
        ids = {e.card_id for e in index.filter_by_type("refinery")}
        assert ids == {"refinery-03", "refinery-01"}

    def test_filter_by_active_types(self, index):
        ids = {e.card_id for e in index.filter_by_active_types({"thruster", "bernal"})}
        assert ids == {"thruster-02", "thruster-05", "bernal-01"}

    def test_no_active_filter_means_all(self, index):
        assert index.filter_by_active_types(None) is index.entries

    def test_lookup_before_load_raises(self):
        index = CardIndex(loader=lambda: make_raw_index())
        with pytest.raises(RuntimeError):
            index.find_by_id("refinery-03")
