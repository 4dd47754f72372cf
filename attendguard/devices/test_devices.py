"""Tests for device binding and trust scores."""
import threading

import pytest
from sqlalchemy import text

from attendguard import security_hmac
from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.conftest import T0
from attendguard.db import SessionLocal
from attendguard.devices.service import DeviceService, is_suspicious, validate_fingerprint
from attendguard.errors import ValidationError
from attendguard.settings import settings

FP = "fp-device-alpha-000001"
OTHER_FP = "fp-device-bravo-000002"


def _attempt(db, student_id, fingerprint, verdict="PRESENT", submitted_at=T0, session_id="s1"):
    db.execute(
        text(
            """
            INSERT INTO checkin_attempts
                (id, session_id, student_id, latitude, longitude, distance_m,
                 fingerprint_hash, flags, verdict, submitted_at)
            VALUES (:id, :sid, :student, 0, 0, 0, :h, '[]', :verdict, :at)
            """
        ),
        {
            "id": f"{student_id}-{fingerprint}-{submitted_at}",
            "sid": session_id,
            "student": student_id,
            "h": security_hmac.hash_fingerprint(fingerprint),
            "verdict": verdict,
            "at": submitted_at,
        },
    )
    db.commit()


class TestFingerprintFormat:
    """Test cases for fingerprint validation."""

    @pytest.mark.parametrize("value", [None, "", "short", "x" * 513])
    def test_rejects_bad_format(self, value):
        with pytest.raises(ValidationError):
            validate_fingerprint(value)

    def test_accepts_and_strips(self):
        assert validate_fingerprint(f"  {FP}  ") == FP

    def test_hash_hides_raw_value(self):
        """Only a truncated keyed digest is stored."""
        digest = security_hmac.hash_fingerprint(FP)
        assert len(digest) == 32
        assert FP not in digest


class TestBinding:
    """Test cases for lookup_or_bind."""

    def test_first_sight_binds_with_full_trust(self, db):
        result = DeviceService(db).lookup_or_bind(FP, "stu-a", device_type="mobile", now=T0)

        assert result.is_new
        assert not result.mismatch
        assert result.binding["student_id"] == "stu-a"
        assert result.binding["trust_score"] == 100
        assert AuditService(db).count(AuditEventType.device_bound) == 1

    def test_owner_reuse_counts_usage(self, db):
        service = DeviceService(db)
        service.lookup_or_bind(FP, "stu-a", now=T0)
        result = service.lookup_or_bind(FP, "stu-a", now=T0 + 1000)

        assert not result.is_new
        assert not result.mismatch
        assert result.binding["usage_count"] == 2
        assert result.binding["last_used_at"] == T0 + 1000

    def test_second_student_is_a_mismatch(self, db):
        """Ownership stays with the first student; trust drops."""
        service = DeviceService(db)
        service.lookup_or_bind(FP, "stu-a", now=T0)
        result = service.lookup_or_bind(FP, "stu-b", now=T0 + 1000)

        assert result.mismatch
        assert result.binding["student_id"] == "stu-a"
        assert result.binding["trust_score"] == 100 - settings.trust_mismatch_penalty
        assert result.binding["mismatch_count"] == 1
        assert AuditService(db).count(AuditEventType.device_mismatch) == 1

    def test_trust_never_goes_below_zero(self, db):
        service = DeviceService(db)
        service.lookup_or_bind(FP, "stu-a", now=T0)
        for i in range(8):
            result = service.lookup_or_bind(FP, f"stu-x{i}", now=T0 + i)

        assert result.binding["trust_score"] == 0
        assert result.binding["mismatch_count"] == 8

    def test_concurrent_mismatches_lose_no_penalty(self, db):
        """Every parallel mismatch lands in the counters exactly once."""
        DeviceService(db).lookup_or_bind(FP, "stu-a", now=T0)
        barrier = threading.Barrier(4)

        def worker(i):
            local = SessionLocal()
            try:
                barrier.wait()
                DeviceService(local).lookup_or_bind(FP, f"stu-x{i}", now=T0 + i)
            finally:
                local.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        binding = DeviceService(db).get(security_hmac.hash_fingerprint(FP))
        assert binding["mismatch_count"] == 4
        assert binding["trust_score"] == 100 - 4 * settings.trust_mismatch_penalty
        assert AuditService(db).count(AuditEventType.device_mismatch) == 4

    def test_recover_is_capped(self, db):
        service = DeviceService(db)
        service.lookup_or_bind(FP, "stu-a", now=T0)
        service.lookup_or_bind(FP, "stu-b", now=T0)
        h = security_hmac.hash_fingerprint(FP)

        service.recover(h)
        assert service.get(h)["trust_score"] == 100 - settings.trust_mismatch_penalty + settings.trust_recovery_step
        for _ in range(10):
            service.recover(h)
        assert service.get(h)["trust_score"] == 100

    def test_is_suspicious_below_floor(self):
        assert is_suspicious({"trust_score": settings.trust_floor - 1})
        assert not is_suspicious({"trust_score": settings.trust_floor})


class TestMultipleDevices:
    """Test cases for the multi-device window."""

    def test_recent_success_on_other_device(self, db):
        service = DeviceService(db)
        service.lookup_or_bind(FP, "stu-a", now=T0)
        _attempt(db, "stu-a", OTHER_FP, submitted_at=T0 - 60_000)

        assert service.check_multiple_devices("stu-a", security_hmac.hash_fingerprint(FP), now=T0)
        assert service.get(security_hmac.hash_fingerprint(FP))["multi_device_count"] == 1

    def test_same_device_does_not_count(self, db):
        service = DeviceService(db)
        _attempt(db, "stu-a", FP, submitted_at=T0 - 60_000)
        assert not service.check_multiple_devices("stu-a", security_hmac.hash_fingerprint(FP), now=T0)

    def test_outside_window_does_not_count(self, db):
        service = DeviceService(db)
        window = settings.multi_device_window_minutes * 60_000
        _attempt(db, "stu-a", OTHER_FP, submitted_at=T0 - window - 1)
        assert not service.check_multiple_devices("stu-a", security_hmac.hash_fingerprint(FP), now=T0)

    def test_rejected_attempts_do_not_count(self, db):
        service = DeviceService(db)
        _attempt(db, "stu-a", OTHER_FP, verdict="REJECTED", submitted_at=T0 - 1000)
        assert not service.check_multiple_devices("stu-a", security_hmac.hash_fingerprint(FP), now=T0)


class TestSuspiciousReport:
    """Test cases for the admin report."""

    def test_lists_low_trust_devices(self, db):
        service = DeviceService(db)
        service.lookup_or_bind(FP, "stu-a", now=T0)
        service.lookup_or_bind(OTHER_FP, "stu-c", now=T0)
        for i in range(3):
            service.lookup_or_bind(FP, f"stu-x{i}", now=T0)

        devices = service.suspicious_devices()
        assert [d["student_id"] for d in devices] == ["stu-a"]
        assert devices[0]["trust_score"] == 40

    def test_report_endpoint(self, client, db, auth):
        service = DeviceService(db)
        service.lookup_or_bind(FP, "stu-a", now=T0)
        for i in range(3):
            service.lookup_or_bind(FP, f"stu-x{i}", now=T0)

        response = client.get("/devices/suspicious", headers=auth("admin", "admin"))
        assert response.status_code == 200
        body = response.json()
        assert body["threshold"] == settings.trust_floor
        assert body["devices"][0]["mismatch_count"] == 3
