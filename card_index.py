"""
card_index.py — Hash index loading and lookup.
Index: card-index.json (one entry per physical card face).

Each entry: {filename, cardId, side, type, name, hash, hashBytes}
  - hashBytes (8 ints 0-255) is authoritative for distance computation
  - hash (16 hex chars) must encode the same 64 bits; mismatches are logged
  - type is derived from cardId ("bernal-01" -> "bernal") when missing

The index is loaded once per CardIndex instance and shared read-only by the
text and hash matchers. Concurrent first-time callers of load() all await the
same in-flight load; the backing file/URL is fetched exactly once.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

import requests

from config import CARD_INDEX_SOURCE, HASH_BYTES, INDEX_FETCH_TIMEOUT
from image_hash import hash_to_hex

logger = logging.getLogger("card_index")


class CatalogUnavailable(Exception):
    """The hash index could not be retrieved or parsed. Fatal for the scan."""


@dataclass(frozen=True)
class CardIndexEntry:
    """One card face in the hash index."""
    card_id: str
    filename: str
    side: Optional[str]
    type: str
    name: str
    hash_bytes: bytes

    @property
    def hash_hex(self) -> str:
        return hash_to_hex(self.hash_bytes)


def type_from_card_id(card_id):
    """Extract card type from a cardId ("gw-thruster-07" -> "gw-thruster")."""
    return re.sub(r"-\d+[a-z]?$", "", card_id).lower()


def _parse_entry(raw, position):
    if not isinstance(raw, dict):
        raise CatalogUnavailable(f"Index entry #{position} is not an object")

    card_id = raw.get("cardId")
    if not isinstance(card_id, str) or not card_id:
        raise CatalogUnavailable(f"Index entry #{position} has no cardId")

    hash_list = raw.get("hashBytes")
    if (not isinstance(hash_list, list) or len(hash_list) != HASH_BYTES
            or not all(isinstance(b, int) and 0 <= b <= 255 for b in hash_list)):
        raise CatalogUnavailable(
            f"Index entry {card_id} has invalid hashBytes (need {HASH_BYTES} ints 0-255)"
        )
    hash_bytes = bytes(hash_list)

    hex_str = _optional_str(raw, "hash", card_id)
    if hex_str and hex_str.lower() != hash_to_hex(hash_bytes):
        logger.warning("Index entry %s: hash %s disagrees with hashBytes, using hashBytes",
                       card_id, hex_str)

    return CardIndexEntry(
        card_id=card_id,
        filename=_optional_str(raw, "filename", card_id) or "",
        side=_optional_str(raw, "side", card_id),
        type=(_optional_str(raw, "type", card_id) or type_from_card_id(card_id)).lower(),
        name=_optional_str(raw, "name", card_id) or "",
        hash_bytes=hash_bytes,
    )


def _optional_str(raw, key, card_id):
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise CatalogUnavailable(f"Index entry {card_id} has non-string {key}: {value!r}")
    return value


def parse_index(data):
    """
    Validate raw index JSON and build the immutable entry tuple.
    Raises CatalogUnavailable on any structural problem; never returns
    a partial index.
    """
    if not isinstance(data, list):
        raise CatalogUnavailable("Card index must be a JSON array")

    entries = []
    seen = set()
    for position, raw in enumerate(data):
        entry = _parse_entry(raw, position)
        if entry.card_id in seen:
            raise CatalogUnavailable(f"Duplicate cardId in index: {entry.card_id}")
        seen.add(entry.card_id)
        entries.append(entry)
    return tuple(entries)


class CardIndex:
    """
    Load-once card index.

    Usage:
        index = CardIndex("data/card-index.json")
        entries = await index.load()
        index.find_by_id("refinery-03")
        index.filter_by_type("refinery")
    """

    def __init__(self, source=CARD_INDEX_SOURCE, loader=None):
        """
        Args:
            source: local path or http(s):// URL of card-index.json
            loader: optional zero-arg callable returning the raw JSON list
                    (replaces the file/URL fetch)
        """
        self.source = str(source)
        self._loader = loader or self._read_source
        self._entries = None
        self._by_id = {}
        self._loading = None
        self.fetch_count = 0

    def __len__(self):
        return len(self._entries) if self._entries is not None else 0

    @property
    def is_loaded(self) -> bool:
        return self._entries is not None

    # ── Loading ──

    async def load(self):
        """
        Load the index (idempotent). Returns the shared entry tuple.
        Raises CatalogUnavailable if the source can't be fetched or parsed.
        """
        if self._entries is not None:
            return self._entries
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load())
        # A cancelled caller must not cancel the load other callers share
        return await asyncio.shield(self._loading)

    async def _load(self):
        try:
            entries = await self._fetch_entries()
        except BaseException:
            # Any failure clears the guard so the next load() starts over
            self._loading = None
            raise

        self._by_id = {entry.card_id: entry for entry in entries}
        self._entries = entries
        logger.info("Card index loaded: %d entries from %s", len(entries), self.source)
        return entries

    async def _fetch_entries(self):
        loop = asyncio.get_running_loop()
        try:
            self.fetch_count += 1
            raw = await loop.run_in_executor(None, self._loader)
            return parse_index(raw)
        except CatalogUnavailable as e:
            logger.error("Failed to load card index from %s: %s", self.source, e)
            raise
        except (OSError, ValueError, requests.RequestException) as e:
            logger.error("Failed to load card index from %s: %s", self.source, e)
            raise CatalogUnavailable(f"Card index unavailable: {e}") from e

    def _read_source(self):
        """Fetch the raw index JSON from disk or over HTTP (blocking)."""
        if self.source.startswith(("http://", "https://")):
            r = requests.get(self.source, timeout=INDEX_FETCH_TIMEOUT)
            r.raise_for_status()
            return r.json()

        with open(self.source, "r", encoding="utf-8") as f:
            return json.load(f)

    # ── Lookup ──

    def _require_loaded(self):
        if self._entries is None:
            raise RuntimeError("Card index not loaded. Await load() first.")
        return self._entries

    @property
    def entries(self):
        return self._require_loaded()

    def find_by_id(self, card_id):
        """Return the entry for a cardId, or None."""
        self._require_loaded()
        return self._by_id.get(card_id)

    def filter_by_type(self, card_type):
        """All entries of one card type."""
        return tuple(e for e in self._require_loaded() if e.type == card_type)

    def filter_by_active_types(self, active_types):
        """Entries whose type is in active_types. None means every type."""
        entries = self._require_loaded()
        if active_types is None:
            return entries
        active = set(active_types)
        return tuple(e for e in entries if e.type in active)
