"""
Loads the station catalogue into the local database.

Accepted inputs:
  - JSON list of station objects (tolerant field names, see _normalize_item)
  - GeoJSON FeatureCollection of Point features (coordinates are [lon, lat])
  - CSV with id, name, latitude, longitude, zone, lines (";"-separated)
  - A remote URL (STATIONS_FEED_URL) serving either JSON form

Ingestion upserts by station id.  Stations missing from the new catalogue
are removed unless a visit still references them.
"""

import io
import logging
import math
from typing import Any, Iterable, Optional

import httpx
import pandas as pd
from sqlalchemy.orm import Session

from config import STATIONS_FEED_URL
from db.models import Station, Visit

logger = logging.getLogger(__name__)


def normalize_station_rows(items: Iterable[dict[str, Any]], source: str = "uploaded") -> list[dict[str, Any]]:
    """
    Coerce loosely-shaped station objects into column dicts.

    Rows without usable coordinates (missing, unparsable, non-finite, or 0) are dropped.
    """
    rows = []
    skipped = 0
    for index, item in enumerate(items):
        row = _normalize_item(item, f"{source}-{index}")
        if row is None:
            skipped += 1
            continue
        rows.append(row)
    if skipped:
        logger.warning("Skipped %d station rows without usable coordinates.", skipped)
    return rows


def _normalize_item(item: dict[str, Any], fallback_id: str) -> Optional[dict[str, Any]]:
    geo = item.get("geocoords") or {}
    lat = _to_float(_first(item.get("latitude"), item.get("lat"), geo.get("lat")))
    lon = _to_float(_first(item.get("longitude"), item.get("lng"), item.get("lon"), geo.get("lng")))
    if not lat or not lon:
        return None

    lines = _first(item.get("lines"), item.get("line_names"))
    if isinstance(lines, str):
        lines = [part.strip() for part in lines.split(";") if part.strip()]
    elif isinstance(lines, list):
        lines = [l["name"] if isinstance(l, dict) else str(l) for l in lines]
    else:
        lines = []

    zone = _first(item.get("zone"), item.get("zone_number"))
    return {
        "id": str(_first(item.get("tfl_id"), item.get("id")) or fallback_id),
        "name": str(_first(item.get("name"), item.get("station_name")) or "Unknown Station"),
        "latitude": lat,
        "longitude": lon,
        "zone": str(zone) if zone not in (None, "") else None,
        "lines": lines,
    }


def parse_geojson(collection: dict[str, Any]) -> list[dict[str, Any]]:
    """Extract Point features that carry an id; line objects contribute their name."""
    items = []
    for feature in collection.get("features", []):
        geometry = feature.get("geometry") or {}
        props = feature.get("properties") or {}
        if geometry.get("type") != "Point" or not props.get("id"):
            continue
        lon, lat = geometry["coordinates"][:2]
        items.append({
            "id": props["id"],
            "name": props.get("name"),
            "zone": props.get("zone"),
            "lines": props.get("lines") or [],
            "latitude": lat,
            "longitude": lon,
        })
    logger.info("Found %d station features in GeoJSON.", len(items))
    return normalize_station_rows(items, source="geojson")


def parse_csv(content: bytes) -> list[dict[str, Any]]:
    df = pd.read_csv(io.BytesIO(content), dtype=str).fillna("")
    return normalize_station_rows(df.to_dict(orient="records"), source="csv")


def parse_feed(payload: Any) -> list[dict[str, Any]]:
    """Dispatch on the JSON shape of an upload or feed response."""
    if isinstance(payload, dict) and payload.get("type") == "FeatureCollection":
        return parse_geojson(payload)
    if isinstance(payload, dict):
        payload = payload.get("stations", payload.get("stationsData"))
    if not isinstance(payload, list):
        raise ValueError("Expected a list of stations or a GeoJSON FeatureCollection.")
    return normalize_station_rows(payload)


def store_stations(rows: list[dict[str, Any]], session: Session) -> int:
    """
    Upsert `rows` and prune unreferenced stations absent from them. Returns rows written.

    An empty `rows` raises ValueError before anything is written.
    """
    if not rows:
        raise ValueError("Feed contained no usable stations.")
    incoming = {row["id"] for row in rows}
    for row in rows:
        session.merge(Station(**row))

    referenced = {r[0] for r in session.query(Visit.station_id).distinct().all()}
    stale = [
        sid for (sid,) in session.query(Station.id).all()
        if sid not in incoming and sid not in referenced
    ]
    if stale:
        session.query(Station).filter(Station.id.in_(stale)).delete(synchronize_session=False)
    session.commit()
    logger.info("Station catalogue stored: %d upserted, %d removed.", len(rows), len(stale))
    return len(rows)


async def download_station_feed(url: str = STATIONS_FEED_URL) -> Any:
    if not url:
        raise ValueError("STATIONS_FEED_URL is not configured. Set it in your .env file.")
    logger.info("Downloading station catalogue from %s", url)
    async with httpx.AsyncClient(timeout=60) as client:
        response = await client.get(url, follow_redirects=True)
        response.raise_for_status()
    return response.json()


async def refresh_station_catalogue(session: Session, url: str = STATIONS_FEED_URL) -> int:
    """Download and ingest a fresh copy of the station catalogue."""
    payload = await download_station_feed(url)
    return store_stations(parse_feed(payload), session)


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _to_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None
