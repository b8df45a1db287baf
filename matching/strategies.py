"""
Matcher stages for the station resolver, ordered from strict to permissive.

Each stage inspects the whole catalogue and returns zero or more scored
candidates; the resolver stops at the first stage that returns anything.

  exact_match         normalized names equal                       score 1.0
  suffix_match        equal once one side drops "underground"...   score 0.95
  fuzzy_match         similarity ≥ 0.90                            score = similarity
  gps_assisted_fuzzy  stations within 500 m of the user,
                      similarity ≥ 0.75                            score = similarity × 0.9
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from geofence.evaluator import Coordinate, haversine_metres, usable
from matching.catalogue import Station
from matching.normalize import similarity, strip_suffix

EXACT_SCORE = 1.0
SUFFIX_SCORE = 0.95
FUZZY_THRESHOLD = 0.90
GPS_ASSIST_RADIUS_METRES = 500
GPS_ASSIST_THRESHOLD = 0.75
GPS_ASSIST_DISCOUNT = 0.9


@dataclass(frozen=True)
class CatalogueEntry:
    station: Station
    normalized: str


@dataclass(frozen=True)
class MatchQuery:
    normalized: str
    user_location: Optional[Coordinate] = None


@dataclass(frozen=True)
class Candidate:
    station: Station
    score: float
    rule: str


class ExactMatch:
    rule = "exact_match"

    def candidates(self, query: MatchQuery, entries: Sequence[CatalogueEntry]) -> list[Candidate]:
        return [
            Candidate(e.station, EXACT_SCORE, self.rule)
            for e in entries
            if e.normalized == query.normalized
        ]


class SuffixMatch:
    """One side carries a station suffix the other lacks."""
    rule = "suffix_match"

    def candidates(self, query: MatchQuery, entries: Sequence[CatalogueEntry]) -> list[Candidate]:
        search = query.normalized
        search_bare = strip_suffix(search)
        found = []
        for e in entries:
            entry_bare = strip_suffix(e.normalized)
            search_side = search_bare != search and search_bare == e.normalized
            entry_side = entry_bare != e.normalized and entry_bare == search
            if search_side or entry_side:
                found.append(Candidate(e.station, SUFFIX_SCORE, self.rule))
        return found


class FuzzyMatch:
    rule = "fuzzy_match"

    def __init__(self, threshold: float = FUZZY_THRESHOLD):
        self.threshold = threshold

    def candidates(self, query: MatchQuery, entries: Sequence[CatalogueEntry]) -> list[Candidate]:
        found = []
        for e in entries:
            score = similarity(query.normalized, e.normalized)
            if score >= self.threshold:
                found.append(Candidate(e.station, score, self.rule))
        return found


class LocationAssistedMatch:
    """Relaxed fuzzy match restricted to stations near the user; no-op without a location."""
    rule = "gps_assisted_fuzzy"

    def __init__(
        self,
        radius_metres: float = GPS_ASSIST_RADIUS_METRES,
        threshold: float = GPS_ASSIST_THRESHOLD,
        discount: float = GPS_ASSIST_DISCOUNT,
    ):
        self.radius_metres = radius_metres
        self.threshold = threshold
        self.discount = discount

    def candidates(self, query: MatchQuery, entries: Sequence[CatalogueEntry]) -> list[Candidate]:
        loc = query.user_location
        if not usable(loc):
            return []
        found = []
        for e in entries:
            distance = haversine_metres(loc.lat, loc.lon, e.station.latitude, e.station.longitude)
            if distance > self.radius_metres:
                continue
            score = similarity(query.normalized, e.normalized)
            if score >= self.threshold:
                found.append(Candidate(e.station, score * self.discount, self.rule))
        return found


DEFAULT_STAGES = (ExactMatch(), SuffixMatch(), FuzzyMatch(), LocationAssistedMatch())
