"""
Read-only station catalogue records used by the resolver.

ORM rows are converted to frozen Station records at the boundary so the
matching code never touches a live session.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from db.models import Station as StationRow

# Lines shown when disambiguating stations that share a name
MAX_DISPLAY_LINES = 3


@dataclass(frozen=True)
class Station:
    id: str
    name: str
    lines: tuple[str, ...]
    zone: str | None
    latitude: float
    longitude: float

    @classmethod
    def from_row(cls, row: StationRow) -> "Station":
        return cls(
            id=row.id,
            name=row.name,
            lines=tuple(row.lines or ()),
            zone=row.zone,
            latitude=row.latitude,
            longitude=row.longitude,
        )


def load_catalogue(session: Session) -> list[Station]:
    """Snapshot the full station catalogue, ordered by id for stable results."""
    rows = session.query(StationRow).order_by(StationRow.id).all()
    return [Station.from_row(r) for r in rows]


def display_names(stations: Iterable[Station]) -> dict[str, str]:
    """
    Map station id → display name.

    Stations whose base name is unique keep it; stations sharing a name get
    up to three of their lines appended, e.g. "Paddington (Bakerloo, District)".
    """
    stations = list(stations)
    by_name: dict[str, list[Station]] = defaultdict(list)
    for s in stations:
        by_name[s.name].append(s)

    names: dict[str, str] = {}
    for s in stations:
        if len(by_name[s.name]) == 1 or not s.lines:
            names[s.id] = s.name
        else:
            names[s.id] = f"{s.name} ({', '.join(s.lines[:MAX_DISPLAY_LINES])})"
    return names
