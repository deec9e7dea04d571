import pytest

from schoolauth.service.audit import (
    ALERT_THRESHOLD,
    AuditService,
    calculate_risk_score,
    determine_severity,
)
from schoolauth.storage.memory import MemoryStore


class BrokenStore:
    def record_audit_log(self, entry):
        raise RuntimeError("disk full")

    def record_security_event(self, event):
        raise RuntimeError("disk full")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestRiskScore:
    def test_base_scores(self):
        assert calculate_risk_score("BRUTE_FORCE_ATTEMPT") == 70
        assert calculate_risk_score("TOKEN_REFRESH") == 50

    def test_modifiers_add_up_and_cap(self):
        details = {
            "failed_attempts": 11,
            "is_from_blocked_country": True,
            "unusual_location": True,
            "multiple_devices": True,
        }
        assert calculate_risk_score("SUSPICIOUS_DEVICE", details) == 100
        assert calculate_risk_score("SUSPICIOUS_DEVICE", {"failed_attempts": 10}) == 50
        assert calculate_risk_score("SUSPICIOUS_DEVICE", {"unusual_location": True}) == 60

    @pytest.mark.parametrize(
        "event_type,score,severity",
        [
            ("WEAK_PASSWORD_DETECTED", 30, "LOW"),
            ("RATE_LIMIT_EXCEEDED", 40, "MEDIUM"),
            ("SUSPICIOUS_IP", 60, "HIGH"),
            ("BRUTE_FORCE_ATTEMPT", 10, "HIGH"),
            ("SESSION_HIJACKING_ATTEMPT", 10, "CRITICAL"),
            ("ACCOUNT_LOCKOUT", 80, "CRITICAL"),
        ],
    )
    def test_severity(self, event_type, score, severity):
        assert determine_severity(event_type, score) == severity


class TestAuditService:
    def test_log_persists_entry(self, store):
        entry = AuditService(store).log(
            "LOGIN", "AUTH", user_id="u1", role="teacher", details={"username": "t"}
        )
        assert entry is not None
        assert store.list_audit_logs()[0].action == "LOGIN"

    def test_unknown_role_is_dropped(self, store):
        entry = AuditService(store).log("LOGIN", "AUTH", role="janitor")
        assert entry.role is None

    def test_store_failures_are_swallowed(self):
        service = AuditService(BrokenStore())
        assert service.log("LOGIN", "AUTH") is None
        assert service.security_event("POTENTIAL_ATTACK") is None

    def test_high_risk_event_raises_alert(self, store):
        event = AuditService(store).security_event("POTENTIAL_ATTACK", user_id="u1")
        assert event.risk_score >= ALERT_THRESHOLD
        assert event.alert_sent is True
        assert event.severity == "CRITICAL"

    def test_low_risk_event_does_not_alert(self, store):
        event = AuditService(store).security_event("RATE_LIMIT_EXCEEDED", ip_address="1.2.3.4")
        assert event.alert_sent is False
        assert event.severity == "MEDIUM"
        assert store.list_security_events()[0].id == event.id
