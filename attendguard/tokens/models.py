"""SQLAlchemy models for rotating check-in tokens and replay protection."""

from sqlalchemy import Column, Integer, String, BigInteger, ForeignKey

from attendguard.db import Base


class RotatingToken(Base):
    """The single live token of a session; issuing replaces the row."""

    __tablename__ = "rotating_tokens"

    session_id = Column(
        String(32), ForeignKey("class_sessions.id", ondelete="CASCADE"), primary_key=True
    )
    nonce = Column(String(64), nullable=False)
    signature = Column(String(64), nullable=False)
    issued_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False)
    rotation_count = Column(Integer, nullable=False, default=0)


class ConsumedNonce(Base):
    """Record indicating that a session nonce has already been used."""

    __tablename__ = "consumed_nonces"

    # (session_id, nonce) -> existence means "already consumed".
    session_id = Column(String(32), primary_key=True)
    nonce = Column(String(64), primary_key=True)
    student_id = Column(String(64), nullable=False)
    consumed_at = Column(BigInteger, nullable=False)
