"""
Station resolver: maps recognized sign text to a canonical catalogue station.

The recognizer may return both its raw text and a cleaner extracted name;
the cleaner name is preferred when present.  Matching runs the stages in
matching.strategies in order and stops at the first stage that produces any
candidate.  A unique top-scoring candidate wins; tied top scores are reported
as ambiguous rather than guessed.

Failures are returned as ResolutionError values, never raised:
  no_catalogue     empty catalogue
  empty_search     no usable text
  no_match         nothing matched; up to 3 near misses (similarity ≥ 0.5)
  ambiguous_match  several candidates share the top score
"""

import logging
from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence, Union

from geofence.evaluator import Coordinate
from matching.catalogue import Station, display_names
from matching.normalize import normalize_station_name, similarity
from matching.strategies import DEFAULT_STAGES, CatalogueEntry, Candidate, MatchQuery

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 3
SUGGESTION_THRESHOLD = 0.5

ResolutionErrorCode = Literal["no_catalogue", "empty_search", "no_match", "ambiguous_match"]


@dataclass(frozen=True)
class ResolvedStation:
    station: Station
    display_name: str
    matching_rule: str
    score: float


@dataclass(frozen=True)
class ResolutionError:
    code: ResolutionErrorCode
    message: str
    suggestions: list[Station] = field(default_factory=list)


def resolve_station(
    raw_text: Optional[str],
    station_name: Optional[str],
    stations: Sequence[Station],
    user_location: Optional[Coordinate] = None,
    stages=DEFAULT_STAGES,
) -> Union[ResolvedStation, ResolutionError]:
    if not stations:
        return ResolutionError("no_catalogue", "No stations data available")

    search_text = station_name or raw_text
    if not search_text or not search_text.strip():
        return ResolutionError("empty_search", "No station text to match")

    query = MatchQuery(normalize_station_name(search_text), user_location)
    entries = [CatalogueEntry(s, normalize_station_name(s.name)) for s in stations]
    logger.debug("Resolving %r (normalized %r) against %d stations.", search_text, query.normalized, len(entries))

    candidates: list[Candidate] = []
    for stage in stages:
        candidates = stage.candidates(query, entries)
        if candidates:
            break

    if not candidates:
        suggestions = _near_misses(query.normalized, entries)
        logger.info("No station match for %r; %d suggestion(s).", search_text, len(suggestions))
        return ResolutionError("no_match", f"Could not match station: {search_text}", suggestions)

    # Stable sort keeps catalogue order among equal scores.
    candidates.sort(key=lambda c: c.score, reverse=True)
    best = candidates[0]
    tied = [c for c in candidates if c.score == best.score]
    if len(tied) > 1:
        logger.warning(
            "Ambiguous station match for %r via %s: %s",
            search_text, best.rule, [c.station.id for c in tied],
        )
        return ResolutionError(
            "ambiguous_match",
            f"Multiple possible matches for: {search_text}",
            [c.station for c in tied[:MAX_SUGGESTIONS]],
        )

    names = display_names(stations)
    logger.info(
        "Station resolved %r -> %s (%s) via %s, score %.3f.",
        search_text, best.station.id, names[best.station.id], best.rule, best.score,
    )
    return ResolvedStation(
        station=best.station,
        display_name=names[best.station.id],
        matching_rule=best.rule,
        score=best.score,
    )


def _near_misses(normalized: str, entries: Sequence[CatalogueEntry]) -> list[Station]:
    scored = [(similarity(normalized, e.normalized), e.station) for e in entries]
    scored = [item for item in scored if item[0] >= SUGGESTION_THRESHOLD]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [station for _, station in scored[:MAX_SUGGESTIONS]]
