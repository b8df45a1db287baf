"""
FastAPI application entry point.

On startup:
  1. Initialise the database schema.
  2. Start the APScheduler; when STATIONS_FEED_URL is set, the station
     catalogue is refreshed every STATIONS_REFRESH_HOURS.

Endpoints (v1):
  POST /visits                        record a check-in
  POST /geofence/validate             server-side geofence check
  GET  /stations?query=<name>
  POST /stations/resolve              recognized text → catalogue station
  POST /activities
  GET  /activities/{activity_id}/visits
  GET  /health
  POST /ingest/stations               JSON list or GeoJSON body
  POST /ingest/stations/csv           raw CSV body
  POST /ingest/stations/refresh       pull STATIONS_FEED_URL
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.schemas import (
    ActivityCreate,
    ActivityResult,
    DuplicateVisitResponse,
    ErrorResponse,
    GeofenceValidationRequest,
    GeofenceValidationResponse,
    HealthResponse,
    IngestResponse,
    ResolveRequest,
    ResolveResponse,
    StationResult,
    StationUploadRequest,
    VisitRecordedResponse,
    VisitRequest,
    VisitResult,
)
from config import CORS_ORIGINS, GEOFENCE_RADIUS_METERS, INGEST_API_KEY, STATIONS_FEED_URL, STATIONS_REFRESH_HOURS
from db.models import Activity, Station, Visit
from db.session import SessionLocal, get_session, init_db
from geofence.evaluator import SOURCE_EXIF, SOURCE_NONE, Coordinate, GeofenceResult, evaluate
from ingestion.stations import parse_csv, parse_feed, parse_geojson, refresh_station_catalogue, store_stations
from matching.catalogue import Station as CatalogueStation, display_names, load_catalogue
from matching.resolver import ResolutionError, resolve_station
from verification.decision import RecognitionResult
from visits.errors import TransientStoreError, VisitError
from visits.recorder import VisitEvidence, record_visit_with_retry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_ingest_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _require_ingest_key(key: str | None = Security(_ingest_key_header)) -> None:
    """
    Optional API-key guard for the ingest endpoints.

    If INGEST_API_KEY is not set the endpoints are open (local dev / testing).
    If it is set, the request must include the matching X-API-Key header.
    """
    if not INGEST_API_KEY:
        return  # no key configured → open
    if key != INGEST_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key header.")


scheduler = AsyncIOScheduler()


async def _scheduled_catalogue_refresh() -> None:
    """
    Scheduled job: pull the station catalogue from STATIONS_FEED_URL.

    Opens its own DB session because APScheduler jobs run outside FastAPI's
    DI system.  Failures are logged so a flaky feed cannot kill the scheduler.
    """
    logger.info("Scheduled station catalogue refresh starting.")
    db = SessionLocal()
    try:
        written = await refresh_station_catalogue(db)
        logger.info("Scheduled station catalogue refresh complete: %d stations.", written)
    except Exception as exc:
        logger.error("Scheduled station catalogue refresh failed: %s", exc, exc_info=True)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    logger.info("Database initialised.")

    if STATIONS_FEED_URL:
        scheduler.add_job(
            _scheduled_catalogue_refresh,
            "interval",
            hours=STATIONS_REFRESH_HOURS,
            id="station_catalogue_refresh",
            replace_existing=True,
        )
        logger.info("Station catalogue refresh scheduled every %dh.", STATIONS_REFRESH_HOURS)
    else:
        logger.info("Station catalogue refresh disabled: STATIONS_FEED_URL not set.")

    scheduler.start()
    logger.info("Scheduler started. Geofence radius %dm.", GEOFENCE_RADIUS_METERS)

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="Station Check-in Verifier",
    description="Verifies, sequences and records station check-ins for transit exploration.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(VisitError)
async def _visit_error_handler(request: Request, exc: VisitError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    err = TransientStoreError("Internal error, please retry.")
    return JSONResponse(status_code=err.status_code, content=err.to_payload())


# ---------------------------------------------------------------------------
# Visits
# ---------------------------------------------------------------------------

def _evidence_from_request(payload: VisitRequest) -> VisitEvidence:
    """Coerce the loosely-typed request into explicit evidence records."""
    exif_coords = None
    device_coords = None
    if payload.exif_lat is not None and payload.exif_lng is not None:
        exif_coords = Coordinate(payload.exif_lat, payload.exif_lng)

    if payload.latitude is not None and payload.longitude is not None:
        point = Coordinate(payload.latitude, payload.longitude)
        photo_tagged = payload.gps_source == SOURCE_EXIF or bool(payload.exif_gps_present)
        if photo_tagged and exif_coords is None:
            exif_coords = point
        else:
            device_coords = point

    geofence = None
    if payload.geofence_result is not None:
        g = payload.geofence_result
        distance = g.distance if g.distance is not None else payload.geofence_distance_meters
        # A reported source without a distance carries no usable fix.
        if g.gps_source == SOURCE_NONE or distance is None:
            geofence = GeofenceResult.no_gps(GEOFENCE_RADIUS_METERS)
        else:
            geofence = GeofenceResult(g.within_geofence, distance, g.gps_source, GEOFENCE_RADIUS_METERS)

    recognition = None
    if payload.ocr_result is not None:
        o = payload.ocr_result
        recognition = RecognitionResult(
            success=o.success,
            confidence=o.confidence,
            raw_text=o.station_text_raw or "",
            station_name=o.station_name,
        )

    return VisitEvidence(
        exif_coords=exif_coords,
        device_coords=device_coords,
        geofence=geofence,
        recognition=recognition,
        simulation_mode=payload.simulation_mode,
        ai_enabled=payload.ai_enabled,
        has_connectivity=payload.has_connectivity,
        captured_at=payload.captured_at,
        exif_time_present=bool(payload.exif_time_present),
        checkin_type=payload.checkin_type,
        verifier_version=payload.verifier_version,
        verification_image_url=payload.verification_image_url,
    )


@app.post(
    "/visits",
    response_model=VisitRecordedResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": DuplicateVisitResponse},
        500: {"model": ErrorResponse},
    },
)
def record_visit_endpoint(
    payload: VisitRequest,
    session: Session = Depends(get_session),
) -> VisitRecordedResponse:
    """
    Record a check-in and assign its position in the activity.

    Plain `def` so FastAPI runs it in the threadpool: the recorder blocks on
    the per-activity lock while another request for the same activity commits.
    """
    logger.info(
        "Record visit request: activity=%s station=%s user=%s simulation=%s ai=%s online=%s",
        payload.activity_id, payload.station_id, payload.user_id,
        payload.simulation_mode, payload.ai_enabled, payload.has_connectivity,
    )
    recorded = record_visit_with_retry(
        session,
        payload.activity_id,
        payload.station_id,
        payload.user_id,
        _evidence_from_request(payload),
    )
    return {
        "success": True,
        "visit_id": recorded.visit_id,
        "seq_actual": recorded.seq_actual,
        "status": recorded.status,
        "pending_reason": recorded.pending_reason,
        "verification_method": recorded.verification_method,
    }


@app.post("/geofence/validate", response_model=GeofenceValidationResponse)
async def validate_geofence_endpoint(payload: GeofenceValidationRequest) -> GeofenceValidationResponse:
    """
    Recompute a client's geofence check server-side.

    When the client sends its own distance, `client_server_match` reports
    whether the two agree within 1 m; disagreements are logged.
    """
    check = evaluate(payload.user_lat, payload.user_lng, payload.station_lat, payload.station_lng,
                     GEOFENCE_RADIUS_METERS)

    client_server_match = None
    if payload.client_distance is not None:
        difference = abs(check.distance_meters - payload.client_distance)
        client_server_match = difference <= 1
        if not client_server_match:
            logger.warning(
                "Geofence calculation mismatch for %s: client=%.1f server=%.1f diff=%.1f source=%s",
                payload.station_id, payload.client_distance, check.distance_meters, difference, payload.gps_source,
            )

    logger.info(
        "Server geofence validation %s: station=%s distance=%.0f radius=%d source=%s user=(%s, %s)",
        "PASS" if check.within_radius else "FAIL", payload.station_id, check.distance_meters,
        GEOFENCE_RADIUS_METERS, payload.gps_source, payload.user_lat, payload.user_lng,
    )
    return {
        "valid": check.within_radius,
        "distance": round(check.distance_meters),
        "radius_used": GEOFENCE_RADIUS_METERS,
        "gps_source": payload.gps_source,
        "server_calculation": True,
        "client_server_match": client_server_match,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Stations
# ---------------------------------------------------------------------------

def _station_result(station: CatalogueStation, names: dict[str, str]) -> dict:
    return {
        "station_id": station.id,
        "name": station.name,
        "display_name": names.get(station.id, station.name),
        "lines": list(station.lines),
        "zone": station.zone,
        "lat": station.latitude,
        "lon": station.longitude,
    }


@app.get("/stations", response_model=list[StationResult])
async def search_stations(
    query: str = Query(..., min_length=2, description="Station name substring to search"),
    session: Session = Depends(get_session),
) -> list[StationResult]:
    """Search stations by name substring."""
    rows = (
        session.query(Station)
        .filter(Station.name.ilike(f"%{query}%"))
        .order_by(Station.name)
        .limit(20)
        .all()
    )
    names = display_names(load_catalogue(session))
    return [_station_result(CatalogueStation.from_row(r), names) for r in rows]


@app.post("/stations/resolve", response_model=ResolveResponse)
async def resolve_station_endpoint(
    payload: ResolveRequest,
    session: Session = Depends(get_session),
) -> ResolveResponse:
    """
    Match recognized sign text against the station catalogue.

    Unmatched or ambiguous text is a normal 200 response with `resolved=false`
    and ranked suggestions for the user to pick from.
    """
    catalogue = load_catalogue(session)
    user_location = None
    if payload.user_lat is not None and payload.user_lng is not None:
        user_location = Coordinate(payload.user_lat, payload.user_lng)

    result = resolve_station(payload.station_text_raw, payload.station_name, catalogue, user_location)
    names = display_names(catalogue)
    if isinstance(result, ResolutionError):
        return {
            "resolved": False,
            "error_code": result.code,
            "error": result.message,
            "suggestions": [_station_result(s, names) for s in result.suggestions],
        }
    return {
        "resolved": True,
        "station": _station_result(result.station, names),
        "matching_rule": result.matching_rule,
        "score": round(result.score, 4),
    }


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------

def _activity_result(activity: Activity) -> dict:
    return {
        "activity_id": activity.id,
        "user_id": activity.user_id,
        "title": activity.title,
        "started_at": activity.started_at,
        "gate_start_at": activity.gate_start_at,
    }


@app.post("/activities", response_model=ActivityResult, status_code=201)
async def create_activity(
    payload: ActivityCreate,
    session: Session = Depends(get_session),
) -> ActivityResult:
    now = datetime.now(timezone.utc).isoformat()
    activity = Activity(
        id=str(uuid.uuid4()),
        user_id=payload.user_id,
        title=payload.title,
        started_at=payload.started_at or now,
        created_at=now,
    )
    session.add(activity)
    session.commit()
    return _activity_result(activity)


@app.get("/activities/{activity_id}/visits", response_model=list[VisitResult])
async def list_activity_visits(
    activity_id: str,
    session: Session = Depends(get_session),
) -> list[VisitResult]:
    """Visits of one activity in sequence order."""
    if session.get(Activity, activity_id) is None:
        raise HTTPException(status_code=404, detail=f"Activity not found: {activity_id}")
    visits = (
        session.query(Visit)
        .filter(Visit.activity_id == activity_id)
        .order_by(Visit.seq_actual)
        .all()
    )
    return [
        {
            "visit_id": v.id,
            "station_id": v.station_id,
            "seq_actual": v.seq_actual,
            "status": v.status,
            "pending_reason": v.pending_reason,
            "verification_method": v.verification_method,
            "gps_source": v.gps_source,
            "geofence_distance_m": v.geofence_distance_m,
            "visited_at": v.visited_at,
            "is_simulation": v.is_simulation,
        }
        for v in visits
    ]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
async def health(session: Session = Depends(get_session)) -> HealthResponse:
    """Liveness + catalogue/visit counts so operators can tell whether stations are loaded."""
    station_count: int = session.query(func.count(Station.id)).scalar() or 0
    activity_count: int = session.query(func.count(Activity.id)).scalar() or 0
    visit_count: int = session.query(func.count(Visit.id)).scalar() or 0
    pending_count: int = (
        session.query(func.count(Visit.id)).filter(Visit.status == "pending").scalar() or 0
    )

    next_refresh_at: str | None = None
    refresh_job = scheduler.get_job("station_catalogue_refresh")
    if refresh_job and refresh_job.next_run_time:
        next_refresh_at = refresh_job.next_run_time.isoformat()

    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "geofence_radius_meters": GEOFENCE_RADIUS_METERS,
        "catalogue": {
            "stations": station_count,
            "feed_configured": bool(STATIONS_FEED_URL),
            "next_refresh_at": next_refresh_at,
        },
        "visits": {
            "activities": activity_count,
            "visits": visit_count,
            "pending": pending_count,
        },
    }


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

@app.post("/ingest/stations", response_model=IngestResponse)
async def ingest_stations(
    payload: StationUploadRequest,
    session: Session = Depends(get_session),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """Replace the station catalogue from a JSON list or a GeoJSON FeatureCollection."""
    try:
        if payload.geojson_data is not None:
            rows = parse_geojson(payload.geojson_data)
        elif payload.stations_data is not None:
            rows = parse_feed(payload.stations_data)
        else:
            raise ValueError("Provide stations_data or geojson_data.")
        written = store_stations(rows, session)
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid station data: {exc}")
    return {"status": "ok", "stations_written": written, "message": f"Stored {written} stations."}


@app.post("/ingest/stations/csv", response_model=IngestResponse)
async def ingest_stations_csv(
    request: Request,
    session: Session = Depends(get_session),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """Replace the station catalogue from a raw CSV request body."""
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty CSV body.")
    try:
        rows = parse_csv(body)
        written = store_stations(rows, session)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid CSV: {exc}")
    return {"status": "ok", "stations_written": written, "message": f"Stored {written} stations from CSV."}


@app.post("/ingest/stations/refresh", response_model=IngestResponse)
async def trigger_catalogue_refresh(
    session: Session = Depends(get_session),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """Manually pull STATIONS_FEED_URL.  (With a feed configured this also runs on a schedule.)"""
    try:
        written = await refresh_station_catalogue(session)
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=502, detail=f"Station feed unavailable: {exc}")
    return {"status": "ok", "stations_written": written, "message": f"Refreshed {written} stations from feed."}
