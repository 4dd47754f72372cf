"""QR payload codec: normalise scanned text and render the projected code."""
import io
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from pydantic import ValidationError as PydanticValidationError

from attendguard.errors import ValidationError
from attendguard.schemas import QRPayload

logger = logging.getLogger(__name__)

# long query keys used by printed links; short keys match the JSON form
_QUERY_KEYS = {
    "s": ("s", "session", "sessionId"),
    "t": ("t", "token"),
    "n": ("n", "nonce"),
    "ts": ("ts", "timestamp"),
    "e": ("e", "expires", "expiresAt"),
}


def _from_json(data: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(data)
    except ValueError:
        return None
    if not isinstance(parsed, dict) or not parsed.get("s") or not parsed.get("t"):
        return None
    return parsed


def _from_query(data: str) -> Optional[Dict[str, Any]]:
    parts = urlsplit(data)
    query = parts.query or (data[1:] if data.startswith("?") else "")
    if not query:
        return None
    params = parse_qs(query)
    found = {}
    for field, names in _QUERY_KEYS.items():
        for name in names:
            if params.get(name):
                found[field] = params[name][0]
                break
    if not found.get("s") or not found.get("t"):
        return None
    return found


def _from_pipe(data: str) -> Optional[Dict[str, Any]]:
    parts = data.split("|")
    if len(parts) < 2:
        return None
    return dict(zip(("s", "t", "n", "ts", "e"), (p.strip() or None for p in parts)))


def parse_payload(data: str) -> QRPayload:
    """
    Normalise any supported scan into a QRPayload.

    Accepts the JSON form ``{s, t, n, ts, e}``, a URL or bare query string
    (``?session=&token=&nonce=&ts=&e=``, short keys also work), and the
    pipe-delimited ``s|t|n|ts|e`` form. A payload without a nonce or an
    issue timestamp cannot be validated and is refused.
    """
    data = (data or "").strip()
    if not data:
        raise ValidationError("QR code is empty; scan the code shown in class")

    raw = _from_json(data) or _from_query(data) or _from_pipe(data)
    if raw is None:
        raise ValidationError("Invalid QR code format; scan the code shown in class")
    if not raw.get("n") or not raw.get("ts"):
        raise ValidationError("QR code is outdated; scan the code currently shown in class")

    try:
        return QRPayload(**{k: raw.get(k) for k in ("s", "t", "n", "ts", "e")})
    except PydanticValidationError:
        raise ValidationError("Invalid QR code format; scan the code shown in class")


def encode_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def render_png(payload: Dict[str, Any], box_size: int = 8, border: int = 4) -> bytes:
    """Render the compact JSON payload as a PNG image."""
    qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(encode_payload(payload))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
