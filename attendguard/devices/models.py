"""SQLAlchemy models for device bindings."""

from sqlalchemy import Column, Integer, String, BigInteger, Text

from attendguard.db import Base


class DeviceBinding(Base):
    """A hashed fingerprint bound to the first student who used it."""

    __tablename__ = "device_bindings"

    fingerprint_hash = Column(String(64), primary_key=True)
    student_id = Column(String(64), nullable=False, index=True)
    trust_score = Column(Integer, nullable=False, default=100)
    mismatch_count = Column(Integer, nullable=False, default=0)
    multi_device_count = Column(Integer, nullable=False, default=0)
    usage_count = Column(Integer, nullable=False, default=0)
    device_type = Column(String(32), nullable=True)
    browser = Column(String(64), nullable=True)
    os = Column(String(64), nullable=True)
    components = Column(Text, nullable=False, default="{}")
    first_seen_at = Column(BigInteger, nullable=False)
    last_used_at = Column(BigInteger, nullable=False)
