"""
Errors raised by the visit recorder.

Each carries a stable machine-readable `error_code`, the HTTP status the API
maps it to, and a message that can be shown to the user as-is.  Only
TransientStoreError is worth retrying, and a retry must restart the whole
recording flow.
"""

from typing import Any


class VisitError(Exception):
    error_code = "server_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "error_code": self.error_code, "error": self.message}


class MissingFieldsError(VisitError):
    error_code = "missing_fields"
    status_code = 400

    def __init__(self, fields: list[str]):
        super().__init__(f"Missing required fields: {', '.join(fields)}")
        self.fields = fields


class ForbiddenVisitError(VisitError):
    error_code = "forbidden"
    status_code = 403


class ActivityNotFoundError(VisitError):
    error_code = "activity_not_found"
    status_code = 404


class StationNotFoundError(VisitError):
    error_code = "station_not_found"
    status_code = 404


class DuplicateVisitError(VisitError):
    """
    The (activity, station, user) triple already has a visit.

    Raised identically whether the recorder's own check or the database
    unique constraint caught it; `detected_by` is for logs only.
    """
    error_code = "duplicate_visit"
    status_code = 409

    def __init__(self, existing_visit_id: str, station_name: str, visited_at: str, detected_by: str = "precheck"):
        super().__init__(f"Already checked in to {station_name} for this activity.")
        self.existing_visit_id = existing_visit_id
        self.station_name = station_name
        self.visited_at = visited_at
        self.detected_by = detected_by

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "existing_visit_id": self.existing_visit_id,
            "station_name": self.station_name,
            "visited_at": self.visited_at,
        }


class TransientStoreError(VisitError):
    error_code = "server_error"
    status_code = 500
    retryable = True
