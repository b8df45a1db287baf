"""
Tests for visits/: recording, sequencing, duplicate rejection.

Each test gets a file-backed SQLite database under tmp_path so that
concurrent submissions can use one session per thread, the way API
workers do.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import DatabaseError, OperationalError
from sqlalchemy.orm import sessionmaker

import visits.recorder as recorder
from db.models import Activity, Base, Station, Visit
from db.session import enable_sqlite_foreign_keys
from geofence.evaluator import Coordinate, GeofenceResult
from verification.decision import RecognitionResult
from visits.errors import (
    ActivityNotFoundError,
    DuplicateVisitError,
    ForbiddenVisitError,
    MissingFieldsError,
    StationNotFoundError,
    TransientStoreError,
    VisitError,
)
from visits.recorder import VisitEvidence, record_visit, record_visit_with_retry
from visits.sequencing import ActivityLocks, activity_locks, next_seq_actual

ACTIVITY_ID = "act-1"
OWNER = "user-1"
STATION_COUNT = 10
T0 = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)


def _station_id(i):
    return f"S{i}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def Session(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'visits.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)

    seed = factory()
    for i in range(STATION_COUNT):
        seed.add(Station(id=_station_id(i), name=f"Station {i}", lines=["Central"],
                         latitude=51.5 + i * 0.01, longitude=-0.12))
    seed.add(Activity(id=ACTIVITY_ID, user_id=OWNER, created_at=T0.isoformat()))
    seed.add(Activity(id="act-2", user_id=OWNER, created_at=T0.isoformat()))
    seed.commit()
    seed.close()

    yield factory
    engine.dispose()


@pytest.fixture
def session(Session):
    s = Session()
    yield s
    s.close()


def _record(session, station_index, user_id=OWNER, evidence=None, activity_id=ACTIVITY_ID, **kwargs):
    return record_visit(session, activity_id, _station_id(station_index), user_id,
                        evidence or VisitEvidence(), **kwargs)


def _record_concurrently(Session, submissions):
    """Submit (activity_id, station_id, user_id) triples from separate threads at once."""
    barrier = threading.Barrier(len(submissions))

    def submit(submission):
        activity_id, station_id, user_id = submission
        s = Session()
        try:
            barrier.wait()
            return record_visit(s, activity_id, station_id, user_id, VisitEvidence())
        except VisitError as exc:
            return exc
        finally:
            s.close()

    with ThreadPoolExecutor(max_workers=len(submissions)) as pool:
        return list(pool.map(submit, submissions))


def _seqs(session, activity_id=ACTIVITY_ID):
    session.expire_all()
    return sorted(v.seq_actual for v in session.query(Visit).filter_by(activity_id=activity_id))


# ---------------------------------------------------------------------------
# Sequencing
# ---------------------------------------------------------------------------

class TestSequencing:
    def test_sequential_visits_numbered_from_one(self, session):
        results = [_record(session, i) for i in range(4)]
        assert [r.seq_actual for r in results] == [1, 2, 3, 4]

    def test_continues_from_existing_max(self, session):
        session.add(Visit(id="v-old", activity_id=ACTIVITY_ID, station_id="S0", user_id=OWNER,
                          seq_actual=5, status="verified", verification_method="gps",
                          visited_at=T0.isoformat(), created_at=T0.isoformat()))
        session.commit()
        assert next_seq_actual(session, ACTIVITY_ID) == 6
        assert _record(session, 1).seq_actual == 6

    def test_activities_numbered_independently(self, session):
        _record(session, 0)
        _record(session, 1)
        assert _record(session, 0, activity_id="act-2").seq_actual == 1

    @pytest.mark.parametrize("n", [1, 4, 10])
    def test_concurrent_visits_get_dense_unique_numbers(self, Session, n):
        submissions = [(ACTIVITY_ID, _station_id(i), OWNER) for i in range(n)]
        results = _record_concurrently(Session, submissions)

        assert all(not isinstance(r, Exception) for r in results)
        assert sorted(r.seq_actual for r in results) == list(range(1, n + 1))
        s = Session()
        assert _seqs(s) == list(range(1, n + 1))
        s.close()

    def test_concurrent_visits_across_activities(self, Session):
        submissions = [(aid, _station_id(i), OWNER) for i in range(5) for aid in (ACTIVITY_ID, "act-2")]
        _record_concurrently(Session, submissions)
        s = Session()
        assert _seqs(s, ACTIVITY_ID) == [1, 2, 3, 4, 5]
        assert _seqs(s, "act-2") == [1, 2, 3, 4, 5]
        s.close()

    def test_locks_released_after_recording(self, session):
        _record(session, 0)
        with pytest.raises(DuplicateVisitError):
            _record(session, 0)
        assert len(activity_locks) == 0


# ---------------------------------------------------------------------------
# Duplicates
# ---------------------------------------------------------------------------

class TestDuplicates:
    def test_second_visit_to_same_station_rejected(self, session):
        first = _record(session, 3, now=T0)
        with pytest.raises(DuplicateVisitError) as exc_info:
            _record(session, 3)

        err = exc_info.value
        assert err.existing_visit_id == first.visit_id
        assert err.station_name == "Station 3"
        assert err.visited_at == T0.isoformat()
        assert err.detected_by == "precheck"
        assert err.status_code == 409
        assert err.message == "Already checked in to Station 3 for this activity."

    def test_rejected_duplicate_does_not_consume_a_number(self, session):
        _record(session, 0)
        with pytest.raises(DuplicateVisitError):
            _record(session, 0)
        assert _record(session, 1).seq_actual == 2

    def test_same_station_allowed_in_another_activity(self, session):
        _record(session, 0)
        assert _record(session, 0, activity_id="act-2").seq_actual == 1

    def test_concurrent_duplicates_store_exactly_one(self, Session):
        submissions = [(ACTIVITY_ID, "S2", OWNER)] * 10
        results = _record_concurrently(Session, submissions)

        stored = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, DuplicateVisitError)]
        assert len(stored) == 1
        assert len(rejected) == 9
        assert {r.existing_visit_id for r in rejected} == {stored[0].visit_id}

        s = Session()
        assert s.query(Visit).count() == 1
        s.close()

    def test_constraint_violation_reported_as_duplicate(self, session, monkeypatch):
        first = _record(session, 0)

        # Simulate losing the race: the pre-check misses the concurrent insert.
        real_find = recorder._find_existing
        calls = []

        def missed_once(*args):
            calls.append(args)
            return None if len(calls) == 1 else real_find(*args)

        monkeypatch.setattr(recorder, "_find_existing", missed_once)
        with pytest.raises(DuplicateVisitError) as exc_info:
            _record(session, 0)

        assert exc_info.value.existing_visit_id == first.visit_id
        assert exc_info.value.detected_by == "constraint"
        assert session.query(Visit).count() == 1


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------

class TestValidation:
    def test_missing_fields_listed(self, session):
        with pytest.raises(MissingFieldsError) as exc_info:
            record_visit(session, None, "S0", "", VisitEvidence())
        assert exc_info.value.fields == ["activity_id", "user_id"]
        assert exc_info.value.message == "Missing required fields: activity_id, user_id"
        assert exc_info.value.status_code == 400

    def test_unknown_activity(self, session):
        with pytest.raises(ActivityNotFoundError):
            _record(session, 0, activity_id="missing")

    def test_activity_owned_by_someone_else(self, session):
        with pytest.raises(ForbiddenVisitError):
            _record(session, 0, user_id="intruder")
        assert session.query(Visit).count() == 0

    def test_unknown_station_does_not_consume_a_number(self, session):
        with pytest.raises(StationNotFoundError):
            record_visit(session, ACTIVITY_ID, "NOPE", OWNER, VisitEvidence())
        assert _record(session, 0).seq_actual == 1


# ---------------------------------------------------------------------------
# Transient failures
# ---------------------------------------------------------------------------

def _locked_db(*args, **kwargs):
    raise OperationalError("SELECT", {}, Exception("database is locked"))


class TestTransientFailures:
    def test_store_failure_is_retryable(self, session, monkeypatch):
        monkeypatch.setattr(recorder, "lock_activity", _locked_db)
        with pytest.raises(TransientStoreError) as exc_info:
            _record(session, 0)
        assert exc_info.value.retryable is True
        assert exc_info.value.to_payload()["error_code"] == "server_error"

    def test_other_database_errors_are_retryable(self, session, monkeypatch):
        def disk_error(*args):
            raise DatabaseError("SELECT 1", {}, Exception("disk I/O error"))

        monkeypatch.setattr(recorder, "lock_activity", disk_error)
        with pytest.raises(TransientStoreError) as exc_info:
            _record(session, 0)
        assert exc_info.value.retryable is True
        assert session.query(Visit).count() == 0

    def test_retry_gives_up_after_configured_attempts(self, session, monkeypatch):
        calls = []

        def always_locked(*args):
            calls.append(args)
            _locked_db()

        monkeypatch.setattr(recorder, "lock_activity", always_locked)
        with pytest.raises(TransientStoreError):
            record_visit_with_retry(session, ACTIVITY_ID, "S0", OWNER, VisitEvidence(), attempts=3)
        assert len(calls) == 3

    def test_retry_recovers_from_one_failure(self, session, monkeypatch):
        real_lock = recorder.lock_activity
        calls = []

        def locked_once(*args):
            calls.append(args)
            if len(calls) == 1:
                _locked_db()
            return real_lock(*args)

        monkeypatch.setattr(recorder, "lock_activity", locked_once)
        result = record_visit_with_retry(session, ACTIVITY_ID, "S0", OWNER, VisitEvidence(), attempts=3)
        assert result.seq_actual == 1

    def test_sequence_collision_retried_from_scratch(self, session, monkeypatch):
        _record(session, 0)
        real_next = recorder.next_seq_actual
        calls = []

        def stale_once(*args):
            calls.append(args)
            return 1 if len(calls) == 1 else real_next(*args)

        monkeypatch.setattr(recorder, "next_seq_actual", stale_once)
        result = record_visit_with_retry(session, ACTIVITY_ID, "S1", OWNER, VisitEvidence(), attempts=2)
        assert result.seq_actual == 2
        assert _seqs(session) == [1, 2]

    def test_errors_other_than_transient_not_retried(self, session):
        _record(session, 0)
        with pytest.raises(DuplicateVisitError):
            record_visit_with_retry(session, ACTIVITY_ID, "S0", OWNER, VisitEvidence(), attempts=3)


# ---------------------------------------------------------------------------
# Stored evidence and status
# ---------------------------------------------------------------------------

class TestStoredVisit:
    def test_far_device_fix_is_pending(self, session):
        evidence = VisitEvidence(
            device_coords=Coordinate(51.5 + 0.00989, -0.12),  # ~1100 m from S0
            recognition=RecognitionResult(success=True, confidence=0.9, raw_text="STATION 0"),
        )
        result = _record(session, 0, evidence=evidence)
        assert (result.status, result.pending_reason) == ("pending", "geofence_failed")

        visit = session.get(Visit, result.visit_id)
        assert visit.gps_source == "device"
        assert visit.geofence_distance_m == pytest.approx(1100, abs=2)
        assert visit.load_lat == pytest.approx(51.50989)
        assert visit.exif_gps_present is False
        assert visit.ai_station_text == "STATION 0"

    def test_photo_fix_preferred_and_verified(self, session):
        evidence = VisitEvidence(
            exif_coords=Coordinate(51.5005, -0.12),
            device_coords=Coordinate(52.0, -0.12),
            recognition=RecognitionResult(success=True, confidence=0.9),
            captured_at="2024-06-01T09:28:00+00:00",
        )
        result = _record(session, 0, evidence=evidence)
        assert (result.status, result.verification_method) == ("verified", "ai_image")

        visit = session.get(Visit, result.visit_id)
        assert visit.gps_source == "exif"
        assert visit.latitude == pytest.approx(51.5005)
        assert visit.exif_gps_present is True
        assert visit.exif_time_present is True

    def test_client_verdict_used_without_coordinates(self, session):
        evidence = VisitEvidence(geofence=GeofenceResult.no_gps(750))
        result = _record(session, 0, evidence=evidence)
        assert (result.status, result.pending_reason) == ("pending", "no_gps_data")

    def test_client_verdict_ignored_when_coordinates_sent(self, session):
        evidence = VisitEvidence(
            device_coords=Coordinate(51.6, -0.12),
            geofence=GeofenceResult(True, 10.0, "device", 750),
        )
        result = _record(session, 0, evidence=evidence)
        assert result.pending_reason == "geofence_failed"

    def test_custom_radius(self, session):
        evidence = VisitEvidence(device_coords=Coordinate(51.5 + 0.00468, -0.12))  # ~520 m
        assert _record(session, 0, evidence=evidence, radius_meters=500).status == "pending"
        assert _record(session, 1, evidence=VisitEvidence(device_coords=Coordinate(51.51 + 0.00468, -0.12)),
                       radius_meters=750).status == "verified"

    def test_simulation_flag_stored(self, session):
        result = _record(session, 0, evidence=VisitEvidence(simulation_mode=True))
        assert result.verification_method == "simulation"
        assert session.get(Visit, result.visit_id).is_simulation is True

    def test_first_visit_sets_gate_start(self, session):
        _record(session, 0, now=T0)
        _record(session, 1, now=T0 + timedelta(seconds=90))

        activity = session.get(Activity, ACTIVITY_ID)
        assert activity.gate_start_at == T0.isoformat()
        durations = [v.cumulative_duration_seconds for v in activity.visits]
        assert durations == [0, 90]


# ---------------------------------------------------------------------------
# ActivityLocks
# ---------------------------------------------------------------------------

class TestActivityLocks:
    def test_entries_removed_after_release(self):
        locks = ActivityLocks()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_same_activity_is_exclusive(self):
        locks = ActivityLocks()
        inside = []
        overlap = []

        def work():
            with locks.hold("a"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(True)
                threading.Event().wait(0.01)
                inside.pop()

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []
        assert len(locks) == 0

    def test_different_activities_do_not_block(self):
        locks = ActivityLocks()
        with locks.hold("a"):
            acquired = threading.Event()

            def other():
                with locks.hold("b"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(timeout=2)
            t.join()
