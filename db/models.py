"""
SQLAlchemy ORM models for the station catalogue, activities and check-ins.

Timestamps (started_at, visited_at, ...) are stored as ISO 8601 strings so the
values returned in API errors are exactly what was written.
"""

from sqlalchemy import (
    JSON, Boolean, Column, Float, ForeignKey, Integer, String, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Station(Base):
    __tablename__ = "stations"

    id = Column(String, primary_key=True)  # external id, e.g. 940GZZLUKSX
    name = Column(String, nullable=False, index=True)
    zone = Column(String, nullable=True)
    lines = Column(JSON, nullable=False, default=list)  # list of line names
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)


class Activity(Base):
    """A journey that check-ins are sequenced within."""
    __tablename__ = "activities"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=True)
    started_at = Column(String, nullable=True)     # ISO 8601
    gate_start_at = Column(String, nullable=True)  # ISO 8601, set by the first visit
    created_at = Column(String, nullable=False)    # ISO 8601

    visits = relationship("Visit", back_populates="activity", order_by="Visit.seq_actual")


class Visit(Base):
    __tablename__ = "station_visits"
    __table_args__ = (
        UniqueConstraint("activity_id", "station_id", "user_id", name="uniq_visits_user_activity_station"),
        UniqueConstraint("activity_id", "seq_actual", name="uniq_visits_activity_seq"),
    )

    id = Column(String, primary_key=True)
    activity_id = Column(String, ForeignKey("activities.id"), nullable=False, index=True)
    station_id = Column(String, ForeignKey("stations.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    seq_actual = Column(Integer, nullable=False)

    status = Column(String, nullable=False)               # "verified" | "pending"
    pending_reason = Column(String, nullable=True)
    verification_method = Column(String, nullable=False)  # simulation | offline | manual | ai_image | gps

    # GPS evidence
    latitude = Column(Float, nullable=True)   # coordinate the geofence was evaluated on
    longitude = Column(Float, nullable=True)
    gps_source = Column(String, nullable=False, default="none")  # exif | device | none
    exif_lat = Column(Float, nullable=True)
    exif_lng = Column(Float, nullable=True)
    load_lat = Column(Float, nullable=True)
    load_lon = Column(Float, nullable=True)
    geofence_distance_m = Column(Integer, nullable=True)
    exif_time_present = Column(Boolean, nullable=False, default=False)
    exif_gps_present = Column(Boolean, nullable=False, default=False)

    # Recognition evidence
    ai_station_text = Column(String, nullable=True)
    ai_confidence = Column(Float, nullable=True)
    verification_image_url = Column(String, nullable=True)

    captured_at = Column(String, nullable=True)  # ISO 8601, EXIF DateTimeOriginal
    visited_at = Column(String, nullable=False)  # ISO 8601, when the check-in was received
    created_at = Column(String, nullable=False)
    cumulative_duration_seconds = Column(Integer, nullable=True)

    checkin_type = Column(String, nullable=False, default="image")  # gps | image | manual
    verifier_version = Column(String, nullable=True)
    is_simulation = Column(Boolean, nullable=False, default=False)

    activity = relationship("Activity", back_populates="visits")
    station = relationship("Station")
