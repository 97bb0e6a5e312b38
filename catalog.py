"""
catalog.py — Full card metadata (cards.json) for identified cards.

The hash index only carries what matching needs; the catalog has the rest of
each card record. Used after identification to attach metadata and the
card's other faces (relatedCards: {side: cardId}) to a result.
"""

import json
import logging

import requests

from card_index import CatalogUnavailable
from config import CARDS_SOURCE, INDEX_FETCH_TIMEOUT

logger = logging.getLogger("catalog")


class CardCatalog:

    def __init__(self, source=CARDS_SOURCE, records=None):
        self.source = str(source)
        self._cards = None
        if records is not None:
            self._cards = self._build(records)

    @property
    def is_loaded(self):
        return self._cards is not None

    def __len__(self):
        return len(self._cards) if self._cards is not None else 0

    def load(self):
        """Blocking load of cards.json (path or URL). Idempotent."""
        if self._cards is not None:
            return self
        try:
            if self.source.startswith(("http://", "https://")):
                r = requests.get(self.source, timeout=INDEX_FETCH_TIMEOUT)
                r.raise_for_status()
                records = r.json()
            else:
                with open(self.source, "r", encoding="utf-8") as f:
                    records = json.load(f)
        except (OSError, ValueError, requests.RequestException) as e:
            raise CatalogUnavailable(f"Card catalog unavailable: {e}") from e

        self._cards = self._build(records)
        logger.info("Card catalog loaded: %d cards from %s", len(self._cards), self.source)
        return self

    @staticmethod
    def _build(records):
        if not isinstance(records, list):
            raise CatalogUnavailable("Card catalog must be a JSON array")
        cards = {}
        for record in records:
            card_id = (record.get("id") or record.get("cardId")) if isinstance(record, dict) else None
            if not card_id:
                logger.warning("Skipping catalog record without id: %r", record)
                continue
            cards[card_id] = record
        return cards

    def get(self, card_id):
        """Catalog record for a card id, or None."""
        if self._cards is None:
            return None
        return self._cards.get(card_id)

    def alternate_faces(self, card_id):
        """
        Other faces of the same physical card as {side: record}.
        Related ids missing from the catalog are left out.
        """
        card = self.get(card_id)
        if not card:
            return {}
        faces = {}
        for side, other_id in (card.get("relatedCards") or {}).items():
            if other_id == card_id:
                continue
            other = self.get(other_id)
            if other is not None:
                faces[side] = other
        return faces

    def describe(self, card_id):
        """Compact metadata for API responses."""
        card = self.get(card_id)
        if not card:
            return None
        return {
            "id": card_id,
            "name": card.get("name"),
            "type": card.get("type"),
            "side": card.get("side"),
            "filename": card.get("filename"),
            "related": {
                side: other.get("id") or other.get("cardId")
                for side, other in self.alternate_faces(card_id).items()
            },
        }
