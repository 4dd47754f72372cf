from fastapi import APIRouter
from starlette.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, Counter

router = APIRouter()

# incremented by the check-in pipeline
CHECKIN_REQUESTS = Counter("checkin_requests_total", "Check-in submissions received")
CHECKIN_VERDICTS = Counter("checkin_verdicts_total", "Scored check-ins by verdict", ["verdict"])
TOKEN_REJECTIONS = Counter("token_rejections_total", "Check-in tokens rejected", ["reason"])
RATE_LIMITED = Counter("rate_limited_total", "Submissions refused by the rate limiter")
TOKENS_ISSUED = Counter("tokens_issued_total", "Session tokens issued or rotated")


@router.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
