"""
Visit recorder: turns one check-in submission into a persisted, sequenced visit.

Steps (each a distinct failure point):
  1. Required ids present                        → MissingFieldsError
  2. Activity exists and belongs to the user     → ActivityNotFoundError / ForbiddenVisitError
  3. No visit yet for (activity, station, user)  → DuplicateVisitError
  4. Station exists                              → StationNotFoundError
  5. seq_actual = max + 1 for the activity
  6. Geofence + status decision
  7. Single insert; a unique-constraint loss to a concurrent insert is
     reported as the same DuplicateVisitError as step 3

Steps 2–7 run inside the per-activity critical section (visits.sequencing),
and the duplicate check comes before sequence assignment so a rejected
submission never consumes a number.  Sequence numbers follow insertion order,
not capture time.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import GEOFENCE_RADIUS_METERS, VISIT_RECORD_ATTEMPTS
from db.models import Activity, Station, Visit
from geofence.evaluator import SOURCE_NONE, Coordinate, GeofenceResult, validate_geofence
from verification.decision import Decision, DecisionInputs, RecognitionResult, decide
from visits.errors import (
    ActivityNotFoundError,
    DuplicateVisitError,
    ForbiddenVisitError,
    MissingFieldsError,
    StationNotFoundError,
    TransientStoreError,
    VisitError,
)
from visits.sequencing import ActivityLocks, activity_locks, lock_activity, next_seq_actual

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VisitEvidence:
    """Everything a check-in carries besides its identifiers."""
    exif_coords: Optional[Coordinate] = None
    device_coords: Optional[Coordinate] = None
    # Client-side geofence verdict; only used when no coordinates were sent.
    geofence: Optional[GeofenceResult] = None
    recognition: Optional[RecognitionResult] = None
    simulation_mode: bool = False
    ai_enabled: bool = True
    has_connectivity: bool = True
    captured_at: Optional[str] = None
    exif_time_present: bool = False
    checkin_type: str = "image"
    verifier_version: str = "2.0"
    verification_image_url: Optional[str] = None


@dataclass(frozen=True)
class RecordedVisit:
    visit_id: str
    seq_actual: int
    status: str
    pending_reason: Optional[str]
    verification_method: str
    station_name: str


def record_visit(
    session: Session,
    activity_id: Optional[str],
    station_id: Optional[str],
    user_id: Optional[str],
    evidence: VisitEvidence,
    radius_meters: Optional[float] = None,
    locks: ActivityLocks = activity_locks,
    now: Optional[datetime] = None,
) -> RecordedVisit:
    """
    Record a single check-in.  One attempt; see record_visit_with_retry.

    Raises:
        VisitError subclasses, see module docstring.
    """
    missing = [
        name for name, value in
        (("activity_id", activity_id), ("station_id", station_id), ("user_id", user_id))
        if not value
    ]
    if missing:
        raise MissingFieldsError(missing)

    radius = GEOFENCE_RADIUS_METERS if radius_meters is None else radius_meters
    received_at = now or datetime.now(timezone.utc)
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    with locks.hold(activity_id):
        try:
            return _record_locked(session, activity_id, station_id, user_id, evidence, radius, received_at)
        except VisitError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            existing = _find_existing(session, activity_id, station_id, user_id)
            if existing is None:
                # Lost a seq_actual race to another process; the caller may retry.
                logger.warning("Sequence collision recording visit for activity %s: %s", activity_id, exc.orig)
                raise TransientStoreError("Visit could not be stored, please retry.") from exc
            raise _duplicate(session, existing, detected_by="constraint") from exc
        except OperationalError as exc:
            session.rollback()
            logger.error("Store unavailable while recording visit for activity %s: %s", activity_id, exc)
            raise TransientStoreError("Visit could not be stored, please retry.") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Store error while recording visit for activity %s: %s", activity_id, exc)
            raise TransientStoreError("Visit could not be stored, please retry.") from exc


def record_visit_with_retry(
    session: Session,
    activity_id: Optional[str],
    station_id: Optional[str],
    user_id: Optional[str],
    evidence: VisitEvidence,
    attempts: int = VISIT_RECORD_ATTEMPTS,
    **kwargs,
) -> RecordedVisit:
    """Retry transient store failures; each attempt restarts at the duplicate check."""
    for attempt in range(1, attempts + 1):
        try:
            return record_visit(session, activity_id, station_id, user_id, evidence, **kwargs)
        except TransientStoreError:
            if attempt >= attempts:
                raise
            logger.warning(
                "Transient failure recording visit (attempt %d/%d); retrying from scratch.",
                attempt, attempts,
            )
    raise TransientStoreError("Visit could not be stored, please retry.")


def _record_locked(
    session: Session,
    activity_id: str,
    station_id: str,
    user_id: str,
    evidence: VisitEvidence,
    radius: float,
    received_at: datetime,
) -> RecordedVisit:
    activity = lock_activity(session, activity_id)
    if activity is None:
        raise ActivityNotFoundError(f"Activity not found: {activity_id}")
    if activity.user_id != user_id:
        raise ForbiddenVisitError("User ID does not match the activity owner.")

    existing = _find_existing(session, activity_id, station_id, user_id)
    if existing is not None:
        raise _duplicate(session, existing, detected_by="precheck")

    station = session.get(Station, station_id)
    if station is None:
        raise StationNotFoundError(f"Station not found: {station_id}")

    seq = next_seq_actual(session, activity_id)
    geofence = _geofence_for(evidence, station, radius)
    decision = decide(DecisionInputs(
        simulation_mode=evidence.simulation_mode,
        has_connectivity=evidence.has_connectivity,
        ai_enabled=evidence.ai_enabled,
        geofence=geofence,
        recognition=evidence.recognition,
    ))

    visited_at = received_at.isoformat()
    if seq == 1 and not activity.gate_start_at:
        activity.gate_start_at = visited_at
        logger.info("Activity %s gate start set to %s.", activity_id, visited_at)

    visit = _build_visit(activity, station, user_id, seq, evidence, geofence, decision, received_at)
    session.add(visit)
    session.commit()

    logger.info(
        "Visit recorded: id=%s activity=%s station=%s seq=%d status=%s reason=%s method=%s",
        visit.id, activity_id, station.name, seq, decision.status,
        decision.pending_reason, decision.verification_method,
    )
    return RecordedVisit(
        visit_id=visit.id,
        seq_actual=seq,
        status=decision.status,
        pending_reason=decision.pending_reason,
        verification_method=decision.verification_method,
        station_name=station.name,
    )


def _find_existing(session: Session, activity_id: str, station_id: str, user_id: str) -> Optional[Visit]:
    return (
        session.query(Visit)
        .filter_by(activity_id=activity_id, station_id=station_id, user_id=user_id)
        .one_or_none()
    )


def _duplicate(session: Session, existing: Visit, detected_by: str) -> DuplicateVisitError:
    station = session.get(Station, existing.station_id)
    station_name = station.name if station is not None else existing.station_id
    logger.info(
        "Duplicate visit rejected (%s): activity=%s station=%s existing=%s",
        detected_by, existing.activity_id, existing.station_id, existing.id,
    )
    return DuplicateVisitError(
        existing_visit_id=existing.id,
        station_name=station_name,
        visited_at=existing.visited_at,
        detected_by=detected_by,
    )


def _geofence_for(evidence: VisitEvidence, station: Station, radius: float) -> Optional[GeofenceResult]:
    """Server-side check when coordinates were sent, else the client's verdict (if any)."""
    if evidence.exif_coords is not None or evidence.device_coords is not None:
        return validate_geofence(
            evidence.exif_coords,
            evidence.device_coords,
            station.latitude,
            station.longitude,
            radius_meters=radius,
        )
    return evidence.geofence


def _build_visit(
    activity: Activity,
    station: Station,
    user_id: str,
    seq: int,
    evidence: VisitEvidence,
    geofence: Optional[GeofenceResult],
    decision: Decision,
    received_at: datetime,
) -> Visit:
    chosen = geofence.coordinate if geofence is not None else None
    distance = geofence.distance_meters if geofence is not None else None
    recognition = evidence.recognition

    return Visit(
        id=str(uuid.uuid4()),
        activity_id=activity.id,
        station_id=station.id,
        user_id=user_id,
        seq_actual=seq,
        status=decision.status,
        pending_reason=decision.pending_reason,
        verification_method=decision.verification_method,
        latitude=chosen.lat if chosen else None,
        longitude=chosen.lon if chosen else None,
        gps_source=geofence.source if geofence is not None else SOURCE_NONE,
        exif_lat=evidence.exif_coords.lat if evidence.exif_coords else None,
        exif_lng=evidence.exif_coords.lon if evidence.exif_coords else None,
        load_lat=evidence.device_coords.lat if evidence.device_coords else None,
        load_lon=evidence.device_coords.lon if evidence.device_coords else None,
        geofence_distance_m=round(distance) if distance is not None else None,
        exif_time_present=evidence.exif_time_present or bool(evidence.captured_at),
        exif_gps_present=evidence.exif_coords is not None,
        ai_station_text=(recognition.raw_text or None) if recognition else None,
        ai_confidence=recognition.confidence if recognition else None,
        verification_image_url=evidence.verification_image_url,
        captured_at=evidence.captured_at,
        visited_at=received_at.isoformat(),
        created_at=datetime.now(timezone.utc).isoformat(),
        cumulative_duration_seconds=_cumulative_seconds(activity, received_at),
        checkin_type=evidence.checkin_type,
        verifier_version=evidence.verifier_version,
        is_simulation=evidence.simulation_mode,
    )


def _cumulative_seconds(activity: Activity, received_at: datetime) -> Optional[int]:
    start = _parse_iso(activity.gate_start_at or activity.started_at)
    if start is None:
        return None
    return max(0, round((received_at - start).total_seconds()))


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
