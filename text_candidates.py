"""
text_candidates.py — Turn raw OCR text into ranked search phrases.

OCR output from a card is noisy and often carries stray tokens before and
after the real title ("8 Solar Furnace 3 mass"). Rather than guessing where
the name starts, every contiguous word window is emitted, longest first, and
the matcher keeps whichever window scores best.

    >>> generate_candidates("Solar  Furnace (2)")
    ['solar furnace', 'solar', 'furnace']
"""

import re
import unicodedata

from config import MAX_CANDIDATE_WINDOW, TEXT_MIN_MATCH_LENGTH, TEXT_STOP_WORDS

_NON_LETTERS = re.compile(r"[^a-z\s]+")
_WHITESPACE = re.compile(r"\s+")


def clean_tokens(text):
    """
    Normalize OCR text into a token list:
    strip accents, punctuation and digits, lowercase, drop stop words and
    tokens shorter than 2 characters.
    """
    if not text:
        return []

    normalized = unicodedata.normalize("NFKD", text)
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    normalized = _NON_LETTERS.sub(" ", normalized.lower())
    normalized = _WHITESPACE.sub(" ", normalized).strip()

    return [
        tok for tok in normalized.split(" ")
        if len(tok) >= TEXT_MIN_MATCH_LENGTH and tok not in TEXT_STOP_WORDS
    ]


def generate_candidates(text, max_window=MAX_CANDIDATE_WINDOW):
    """
    Enumerate search phrases from OCR text, most specific first.

    The whole cleaned phrase always comes first; after that, every contiguous
    window of max_window tokens down to single tokens, left to right within
    each size. Duplicates keep their first (longest-first) position.

    Returns:
        list of str (empty if nothing usable survives cleaning)
    """
    tokens = clean_tokens(text)
    if not tokens:
        return []

    candidates = [" ".join(tokens)]
    seen = set(candidates)

    n = len(tokens)
    for size in range(min(n, max_window), 0, -1):
        for start in range(0, n - size + 1):
            phrase = " ".join(tokens[start:start + size])
            if phrase not in seen:
                seen.add(phrase)
                candidates.append(phrase)

    return candidates
