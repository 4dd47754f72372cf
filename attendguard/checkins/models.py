"""SQLAlchemy models for check-in attempts."""

from sqlalchemy import Column, String, Float, Integer, BigInteger, Text, ForeignKey, Index

from attendguard.db import Base


class CheckInAttempt(Base):
    """One scored submission; only the review fields change after insert."""

    __tablename__ = "checkin_attempts"

    id = Column(String(32), primary_key=True)
    session_id = Column(
        String(32), ForeignKey("class_sessions.id", ondelete="CASCADE"), nullable=False
    )
    student_id = Column(String(64), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    altitude = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    distance_m = Column(Float, nullable=False)
    fingerprint_hash = Column(String(64), nullable=True)
    device_type = Column(String(32), nullable=True)
    browser = Column(String(64), nullable=True)
    os = Column(String(64), nullable=True)
    trust_score = Column(Integer, nullable=True)
    flags = Column(Text, nullable=False, default="[]")
    verdict = Column(String(20), nullable=False)
    message = Column(String(255), nullable=True)
    submitted_at = Column(BigInteger, nullable=False)
    minutes_after_start = Column(Float, nullable=True)
    reviewed_by = Column(String(64), nullable=True)
    reviewed_at = Column(BigInteger, nullable=True)
    review_note = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_checkin_session_verdict", "session_id", "verdict"),
        Index("ix_checkin_student_submitted", "student_id", "submitted_at"),
    )
