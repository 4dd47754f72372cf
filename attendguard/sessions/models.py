"""SQLAlchemy models for class sessions."""

from sqlalchemy import Column, Integer, String, Float, BigInteger, Index

from attendguard.db import Base


class ClassSession(Base):
    """A class meeting with its geofence, time window and rotation cadence."""

    __tablename__ = "class_sessions"

    id = Column(String(32), primary_key=True)
    instructor_id = Column(String(64), nullable=False, index=True)
    course_code = Column(String(64), nullable=True)
    center_lat = Column(Float, nullable=True)
    center_lng = Column(Float, nullable=True)
    radius_m = Column(Float, nullable=False)
    required_accuracy_m = Column(Float, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    late_threshold_minutes = Column(Integer, nullable=False)
    rotation_interval_ms = Column(Integer, nullable=False)
    security_level = Column(String(20), nullable=False, default="standard")
    state = Column(String(20), nullable=False, default="scheduled")
    ended_reason = Column(String(20), nullable=True)
    start_at = Column(BigInteger, nullable=True)
    end_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_class_sessions_state_end", "state", "end_at"),)
