import hmac
import hashlib
import secrets

from attendguard.errors import SigningKeyMisconfigured
from attendguard.settings import settings

NONCE_BYTES = 12  # 24 hex chars
FINGERPRINT_HASH_LEN = 32


def _secret() -> bytes:
    secret = getattr(settings, "SIGNING_SECRET", None)
    if not secret:
        raise SigningKeyMisconfigured("server signing secret not set")
    return secret.encode("utf-8")


def new_nonce() -> str:
    return secrets.token_hex(NONCE_BYTES)


def sign_token(session_id: str, nonce: str, issued_at: int) -> str:
    """Keyed hash over sessionId, nonce and issuedAt (epoch ms)."""
    msg = f"{session_id}:{nonce}:{int(issued_at)}".encode("utf-8")
    return hmac.new(_secret(), msg, hashlib.sha256).hexdigest()


def verify_token_signature(
    session_id: str, nonce: str, issued_at: int, signature: str
) -> bool:
    want = sign_token(session_id, nonce, issued_at)
    try:
        return hmac.compare_digest(want, signature)
    except TypeError:
        # non-ASCII str input
        return False


def hash_fingerprint(fingerprint: str) -> str:
    """Store fingerprints only as a keyed, truncated digest."""
    digest = hashlib.sha256(fingerprint.encode("utf-8") + _secret()).hexdigest()
    return digest[:FINGERPRINT_HASH_LEN]
