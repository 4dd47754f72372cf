"""SQLAlchemy models for the audit trail."""

from sqlalchemy import Column, Integer, String, BigInteger, Text, Index

from attendguard.db import Base


class AuditEvent(Base):
    """Append-only record of every integrity outcome."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(40), nullable=False, index=True)
    category = Column(String(20), nullable=False)
    subject_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(32), nullable=True, index=True)
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    origin = Column(String(64), nullable=False, default="system")
    created_at = Column(BigInteger, nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_subject_category", "subject_id", "category", "created_at"),
    )
