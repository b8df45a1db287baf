"""
Station-name normalization and string similarity.

    similarity(a, b) = 1 − levenshtein(a, b) / max(len(a), len(b))
"""

import re

from rapidfuzz.distance import Levenshtein

# Trailing "station" / "underground station" / "tube station"
_STATION_SUFFIX = re.compile(r"\s+(?:(?:underground|tube)\s+)?station$")
# Looser variant for suffix-tolerant matching: also accepts a bare "underground" / "tube"
SUFFIX_PATTERN = re.compile(r"\s+(?:(?:underground|tube)(?:\s+station)?|station)$")

_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"[-‐‑‒–—―]")
_QUOTES = re.compile(r"['‘’“”`\"]")
_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_station_name(name: str) -> str:
    """
    Canonical form for comparing station names.

    >>> normalize_station_name("King's Cross St. Pancras Underground Station")
    'kings cross st pancras'
    """
    text = name.lower().strip()
    text = _STATION_SUFFIX.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    text = _DASHES.sub(" ", text)
    text = text.replace("&", "and")
    text = _QUOTES.sub("", text)
    text = _PUNCTUATION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def strip_suffix(normalized: str) -> str:
    return SUFFIX_PATTERN.sub("", normalized).strip()


def similarity(a: str, b: str) -> float:
    """Levenshtein similarity in [0, 1]; 1.0 for identical strings."""
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    if min(len(a), len(b)) == 0:
        return 0.0
    return 1.0 - Levenshtein.distance(a, b) / longest
