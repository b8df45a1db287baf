from __future__ import annotations
from typing import Literal
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Payload(BaseModel):
    """Request bodies accept snake_case or camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


GpsSourceLiteral = Literal["exif", "device", "none"]


# ---------------------------------------------------------------------------
# POST /visits
# ---------------------------------------------------------------------------

class GeofenceResultIn(_Payload):
    within_geofence: bool
    distance: float | None = None
    gps_source: GpsSourceLiteral = "none"


class OcrResultIn(_Payload):
    success: bool
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    station_text_raw: str | None = None
    station_name: str | None = None


class VisitRequest(_Payload):
    # Required, but checked by the recorder so absence is a 400 missing_fields.
    activity_id: str | None = None
    station_id: str | None = None
    user_id: str | None = None

    # Device-reported location (or photo location when gps_source == "exif")
    latitude: float | None = None
    longitude: float | None = None
    exif_lat: float | None = None
    exif_lng: float | None = None

    captured_at: str | None = None
    exif_time_present: bool | None = None
    exif_gps_present: bool | None = None
    gps_source: GpsSourceLiteral | None = None
    geofence_distance_meters: float | None = None
    geofence_result: GeofenceResultIn | None = None
    ocr_result: OcrResultIn | None = None
    verification_image_url: str | None = None

    simulation_mode: bool = False
    ai_enabled: bool = True
    has_connectivity: bool = True
    checkin_type: Literal["gps", "image", "manual"] = "image"
    verifier_version: str = "2.0"


class VisitRecordedResponse(BaseModel):
    success: Literal[True]
    visit_id: str
    seq_actual: int
    status: Literal["verified", "pending"]
    pending_reason: str | None
    verification_method: str


class ErrorResponse(BaseModel):
    success: Literal[False]
    error_code: str
    error: str


class DuplicateVisitResponse(ErrorResponse):
    existing_visit_id: str
    station_name: str
    visited_at: str


# ---------------------------------------------------------------------------
# POST /geofence/validate
# ---------------------------------------------------------------------------

class GeofenceValidationRequest(_Payload):
    user_lat: float
    user_lng: float
    station_lat: float
    station_lng: float
    station_id: str = Field(..., min_length=1)
    gps_source: GpsSourceLiteral = "device"
    client_distance: float | None = None


class GeofenceValidationResponse(BaseModel):
    valid: bool
    distance: int
    radius_used: float
    gps_source: GpsSourceLiteral
    server_calculation: bool
    client_server_match: bool | None
    timestamp: str


# ---------------------------------------------------------------------------
# Stations
# ---------------------------------------------------------------------------

class StationResult(BaseModel):
    station_id: str
    name: str
    display_name: str
    lines: list[str]
    zone: str | None
    lat: float
    lon: float


class ResolveRequest(_Payload):
    station_text_raw: str | None = None
    station_name: str | None = None
    user_lat: float | None = None
    user_lng: float | None = None


class ResolveResponse(BaseModel):
    resolved: bool
    station: StationResult | None = None
    matching_rule: str | None = None
    score: float | None = None
    error_code: Literal["no_catalogue", "empty_search", "no_match", "ambiguous_match"] | None = None
    error: str | None = None
    suggestions: list[StationResult] = []


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------

class ActivityCreate(_Payload):
    user_id: str = Field(..., min_length=1)
    title: str | None = None
    started_at: str | None = None


class ActivityResult(BaseModel):
    activity_id: str
    user_id: str
    title: str | None
    started_at: str | None
    gate_start_at: str | None


class VisitResult(BaseModel):
    visit_id: str
    station_id: str
    seq_actual: int
    status: str
    pending_reason: str | None
    verification_method: str
    gps_source: str
    geofence_distance_m: int | None
    visited_at: str
    is_simulation: bool


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class CatalogueStats(BaseModel):
    stations: int
    feed_configured: bool
    next_refresh_at: str | None


class VisitStats(BaseModel):
    activities: int
    visits: int
    pending: int


class HealthResponse(BaseModel):
    status: Literal["ok"]
    timestamp: str
    geofence_radius_meters: int
    catalogue: CatalogueStats
    visits: VisitStats


# ---------------------------------------------------------------------------
# POST /ingest/*
# ---------------------------------------------------------------------------

class StationUploadRequest(_Payload):
    stations_data: list[dict] | None = None
    geojson_data: dict | None = None


class IngestResponse(BaseModel):
    status: Literal["ok"]
    stations_written: int
    message: str
