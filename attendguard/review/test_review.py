"""Tests for the review queue."""
from unittest.mock import patch

import pytest

from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.checkins.service import CheckInService
from attendguard.conftest import OUTSIDE, T0
from attendguard.errors import NotFound, NotPending, PermissionDenied
from attendguard.review.service import ReviewService
from attendguard.schemas import Flag, Verdict


@pytest.fixture
def pending_session(db, open_session, live_token, checkin_request):
    """A session with three students waiting for review."""
    session = open_session()
    service = CheckInService(db)
    for i in range(3):
        token = live_token(session, now=T0 + (i + 1) * 1000)
        service.submit(
            checkin_request(token, location=OUTSIDE, fingerprint=f"fp-device-review-{i:06d}"),
            f"stu-{i}",
            now=T0 + (i + 1) * 1000 + 100,
        )
    return session


class TestQueue:
    """Test cases for listing and single decisions."""

    def test_pending_lists_outside_attempts(self, db, pending_session):
        pending = ReviewService(db).pending(pending_session["id"], "prof-1")
        assert [p["student_id"] for p in pending] == ["stu-0", "stu-1", "stu-2"]
        assert all(p["verdict"] == Verdict.pending_review.value for p in pending)

    def test_accept_one(self, db, pending_session):
        service = ReviewService(db)
        attempt = service.pending(pending_session["id"], "prof-1")[0]

        decided = service.accept_one(attempt["id"], "prof-1", "was in the annex", now=T0 + 10_000)
        assert decided["verdict"] == Verdict.present.value
        assert decided["reviewed_by"] == "prof-1"
        assert decided["review_note"] == "was in the annex"
        assert len(service.pending(pending_session["id"], "prof-1")) == 2

    def test_reject_one(self, db, pending_session):
        service = ReviewService(db)
        attempt = service.pending(pending_session["id"], "prof-1")[0]
        assert service.reject_one(attempt["id"], "prof-1")["verdict"] == Verdict.rejected.value

    def test_double_decision_fails_cleanly(self, db, pending_session):
        service = ReviewService(db)
        attempt = service.pending(pending_session["id"], "prof-1")[0]
        service.accept_one(attempt["id"], "prof-1")

        with pytest.raises(NotPending):
            service.reject_one(attempt["id"], "prof-1")
        assert AuditService(db).count(AuditEventType.review_accepted) == 1
        assert AuditService(db).count(AuditEventType.review_rejected) == 0

    def test_only_owner_may_decide(self, db, pending_session):
        service = ReviewService(db)
        with pytest.raises(PermissionDenied):
            service.pending(pending_session["id"], "prof-2")
        attempt = service.pending(pending_session["id"], "prof-1")[0]
        with pytest.raises(PermissionDenied):
            service.accept_one(attempt["id"], "prof-2")

    def test_unknown_attempt(self, db):
        with pytest.raises(NotFound):
            ReviewService(db).accept_one("missing", "prof-1")


class TestBulk:
    """Test cases for accept-all / reject-all."""

    def test_accept_all_audits_each_item(self, db, pending_session):
        """N pending attempts produce exactly N audit events."""
        service = ReviewService(db)
        results = service.accept_all(pending_session["id"], "prof-1")

        assert len(results) == 3
        assert all(r["ok"] for r in results)
        assert service.pending(pending_session["id"], "prof-1") == []
        assert AuditService(db).count(AuditEventType.review_accepted, pending_session["id"]) == 3

    def test_reject_all_audits_each_item(self, db, pending_session):
        service = ReviewService(db)
        results = service.reject_all(pending_session["id"], "prof-1", "not in class")

        assert [r["verdict"] for r in results] == [Verdict.rejected.value] * 3
        assert service.pending(pending_session["id"], "prof-1") == []
        assert AuditService(db).count(AuditEventType.review_rejected, pending_session["id"]) == 3

    def test_failing_item_does_not_undo_the_rest(self, db, pending_session):
        """Each item commits on its own."""
        service = ReviewService(db)
        original = service.accept_one
        first_id = service.pending(pending_session["id"], "prof-1")[0]["id"]

        def flaky(attempt_id, *args, **kwargs):
            if attempt_id == first_id:
                raise NotPending(attempt_id)
            return original(attempt_id, *args, **kwargs)

        with patch.object(service, "accept_one", side_effect=flaky):
            results = service.accept_all(pending_session["id"], "prof-1")

        assert [r["ok"] for r in results] == [False, True, True]
        remaining = service.pending(pending_session["id"], "prof-1")
        assert [p["id"] for p in remaining] == [first_id]
        assert AuditService(db).count(AuditEventType.review_accepted) == 2


class TestReviewEndpoints:
    """Test cases for the review HTTP routes."""

    def test_queue_and_accept_all(self, client, auth, pending_session):
        headers = auth("prof-1", "instructor")
        queue = client.get(f"/sessions/{pending_session['id']}/review", headers=headers).json()
        assert queue["total"] == 3

        bulk = client.post(f"/sessions/{pending_session['id']}/review/accept-all", headers=headers).json()
        assert bulk["decided"] == 3
        assert bulk["failed"] == 0

    def test_accept_twice_is_409(self, client, auth, pending_session, db):
        headers = auth("prof-1", "instructor")
        attempt_id = ReviewService(db).pending(pending_session["id"], "prof-1")[0]["id"]

        first = client.post(f"/review/{attempt_id}/accept", json={"note": "ok"}, headers=headers)
        assert first.status_code == 200
        assert first.json()["verdict"] == "PRESENT"
        assert client.post(f"/review/{attempt_id}/reject", headers=headers).status_code == 409

    def test_other_instructor_gets_403(self, client, auth, pending_session):
        response = client.get(
            f"/sessions/{pending_session['id']}/review", headers=auth("prof-2", "instructor")
        )
        assert response.status_code == 403


@pytest.fixture
def flagged_sessions(db, pending_session, open_session, live_token, checkin_request):
    """The pending session plus a second one with a clean and a mismatched attempt."""
    later = open_session(now=T0 + 100_000)
    service = CheckInService(db)
    service.submit(
        checkin_request(live_token(later, now=T0 + 101_000), fingerprint="fp-device-clean-000009"),
        "stu-9",
        now=T0 + 101_500,
    )
    # stu-8 borrows the device stu-0 bound in the first session
    service.submit(
        checkin_request(live_token(later, now=T0 + 102_000), fingerprint="fp-device-review-000000"),
        "stu-8",
        now=T0 + 102_500,
    )
    return pending_session, later


class TestFlaggedReport:
    """Test cases for the flagged attempts report."""

    def test_lists_flagged_attempts_newest_first(self, db, flagged_sessions):
        attempts = ReviewService(db).flagged()

        assert [a["student_id"] for a in attempts] == ["stu-8", "stu-2", "stu-1", "stu-0"]
        assert "stu-9" not in {a["student_id"] for a in attempts}

    def test_filter_by_session(self, db, flagged_sessions):
        first, later = flagged_sessions
        service = ReviewService(db)

        assert len(service.flagged(session_id=first["id"])) == 3
        assert [a["student_id"] for a in service.flagged(session_id=later["id"])] == ["stu-8"]

    def test_filter_by_flag(self, db, flagged_sessions):
        attempts = ReviewService(db).flagged(flag=Flag.device_mismatch.value)

        assert [a["student_id"] for a in attempts] == ["stu-8"]
        assert Flag.device_mismatch.value in attempts[0]["flags"]

    def test_report_endpoint_is_admin_only(self, client, auth, flagged_sessions):
        first, _ = flagged_sessions
        response = client.get(
            "/review/flagged", params={"sessionId": first["id"]}, headers=auth("root", "admin")
        )
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert all("outsideGeofence" in a["flags"] for a in body["attempts"])

        assert client.get("/review/flagged", headers=auth("prof-1", "instructor")).status_code == 403

    def test_unknown_flag_is_422(self, client, auth):
        response = client.get(
            "/review/flagged", params={"flag": "bogus"}, headers=auth("root", "admin")
        )
        assert response.status_code == 422
