"""Tests for the request audit pipeline.

Tests for:
- Sensitive field masking
- Client address resolution
- Action classification and entry construction
- Suspicious activity thresholds
- Batched, non-blocking persistence
"""

from unittest.mock import MagicMock, patch

from merchantauth.service.audit import (
    MASK_TOKEN,
    AuditPipeline,
    Severity,
    SuspiciousActivityType,
    action_type_for,
    build_audit_entry,
    check_failed_login_attempts,
    check_rate_limit_abuse,
    detect_suspicious_activity,
    extract_client_ip,
    generate_session_id,
    is_audit_excluded,
    mask_sensitive_data,
)
from merchantauth.storage.memory import MemoryStore
from merchantauth.storage.models import AuditLogEntry


def _entry(ip="10.0.0.1", path="/api/auth/signin", status=200, action="signin"):
    return AuditLogEntry(
        session_id="sess_1_abc",
        request_method="POST",
        request_path=path,
        response_status=status,
        response_time_ms=5,
        ip_address=ip,
        action_type=action,
    )


class TestMasking:
    """Tests for sensitive field masking."""

    def test_masks_nested_keys_case_insensitively(self):
        body = {
            "email": "a@b.com",
            "Password": "hunter22",
            "profile": {"newPassword": "x", "bank": {"pin": "1234", "ifsc": "HDFC0001"}},
            "items": [{"otp": "123456", "qty": 2}, "plain"],
            "x_apikey": "k",
        }

        masked = mask_sensitive_data(body)

        assert masked["email"] == "a@b.com"
        assert masked["Password"] == MASK_TOKEN
        assert masked["profile"]["newPassword"] == MASK_TOKEN
        assert masked["profile"]["bank"]["pin"] == MASK_TOKEN
        assert masked["profile"]["bank"]["ifsc"] == "HDFC0001"
        assert masked["items"][0] == {"otp": MASK_TOKEN, "qty": 2}
        assert masked["items"][1] == "plain"
        assert masked["x_apikey"] == MASK_TOKEN

    def test_original_is_untouched(self):
        body = {"password": "secret-value"}

        mask_sensitive_data(body)

        assert body == {"password": "secret-value"}

    def test_mfa_session_token_is_masked(self):
        masked = mask_sensitive_data({"mfaSessionToken": "abc", "otpType": "sms"})

        assert masked == {"mfaSessionToken": MASK_TOKEN, "otpType": MASK_TOKEN}

    def test_custom_field_list(self):
        masked = mask_sensitive_data({"aadhaar": "1234", "password": "p"}, ["aadhaar"])

        assert masked == {"aadhaar": MASK_TOKEN, "password": "p"}


class TestClientIp:
    """Tests for client address resolution."""

    def test_forwarded_for_first_entry_wins(self):
        headers = {"x-forwarded-for": " 203.0.113.7 , 10.0.0.1", "x-real-ip": "10.0.0.2"}

        assert extract_client_ip(headers, "127.0.0.1") == "203.0.113.7"

    def test_fallback_order(self):
        assert extract_client_ip({"x-real-ip": "198.51.100.1"}, "127.0.0.1") == "198.51.100.1"
        assert extract_client_ip({"cf-connecting-ip": "198.51.100.2"}) == "198.51.100.2"
        assert extract_client_ip({}, "127.0.0.1") == "127.0.0.1"
        assert extract_client_ip({}) == "unknown"

    def test_ipv4_mapped_address_is_unwrapped(self):
        assert extract_client_ip({}, "::ffff:192.0.2.10") == "192.0.2.10"


class TestEntryConstruction:
    """Tests for building audit rows from request data."""

    def test_action_types(self):
        assert action_type_for("/api/auth/signup", "POST") == "signup"
        assert action_type_for("/api/auth/signin", "POST") == "signin"
        assert action_type_for("/api/auth/send-otp", "POST") == "send_otp"
        assert action_type_for("/api/auth/verify-otp", "POST") == "verify_otp"
        assert action_type_for("/api/auth/logout", "POST") == "logout"
        assert action_type_for("/api/merchant/profile", "GET") == "get_merchant"
        assert action_type_for("/api/admin/merchants/1/profile", "PUT") == "update_merchant"
        assert action_type_for("/api/admin/signin", "POST") is None
        assert action_type_for("/api/other", "POST") is None

    def test_session_id_format(self):
        session_id = generate_session_id()
        prefix, millis, suffix = session_id.split("_")

        assert prefix == "sess"
        assert millis.isdigit()
        assert len(suffix) == 13
        assert generate_session_id() != session_id

    def test_excluded_paths(self):
        assert is_audit_excluded("/health")
        assert is_audit_excluded("/docs")
        assert is_audit_excluded("/api-docs/swagger")
        assert not is_audit_excluded("/api/auth/signin")

    def test_signin_entry_keeps_location_and_masks_password(self):
        entry = build_audit_entry(
            session_id="sess_1_abc",
            method="POST",
            path="/api/auth/signin",
            url="http://testserver/api/auth/signin",
            query=None,
            body={
                "email": "a@b.com",
                "password": "secret-pass",
                "latitude": 12.9,
                "longitude": 77.6,
                "location": "Bengaluru",
            },
            ip_address="10.0.0.1",
            user_agent="pytest",
            status=401,
            elapsed_ms=12,
        )

        assert entry.action_type == "signin"
        assert entry.request_body["password"] == MASK_TOKEN
        assert entry.metadata["location"] == {
            "latitude": 12.9,
            "longitude": 77.6,
            "location": "Bengaluru",
        }
        assert entry.user_id is None
        assert entry.route_name == "/api/auth/signin"

    def test_principal_is_recorded(self):
        entry = build_audit_entry(
            session_id="sess_1_abc",
            method="GET",
            path="/api/merchant/profile",
            url="http://testserver/api/merchant/profile",
            query={"verbose": "1"},
            body=None,
            ip_address="10.0.0.1",
            user_agent=None,
            status=200,
            elapsed_ms=3,
            principal={"user_id": "7", "merchant_id": "12345678", "email": "a@b.com"},
            route_name="/api/merchant/profile",
        )

        assert entry.user_id == 7
        assert entry.merchant_id == "12345678"
        assert entry.request_query == {"verbose": "1"}
        assert entry.request_body is None
        assert "location" not in entry.metadata


class TestSuspiciousActivity:
    """Tests for alert thresholds."""

    def test_failed_login_thresholds(self):
        assert check_failed_login_attempts("1.2.3.4", 4) is None
        assert check_failed_login_attempts("1.2.3.4", 5).severity == Severity.HIGH
        assert check_failed_login_attempts("1.2.3.4", 10).severity == Severity.CRITICAL

    def test_rate_limit_abuse_thresholds(self):
        assert check_rate_limit_abuse("1.2.3.4", 19, "/api/auth/signin") is None
        high = check_rate_limit_abuse("1.2.3.4", 20, "/api/auth/signin")
        assert high.severity == Severity.HIGH
        assert high.activity_type == SuspiciousActivityType.RATE_LIMIT_ABUSE
        assert check_rate_limit_abuse("1.2.3.4", 50, "/x").severity == Severity.CRITICAL

    def test_batch_detection_groups_by_ip(self):
        batch = [_entry(ip="10.0.0.1", status=401) for _ in range(5)]
        batch += [_entry(ip="10.0.0.2", status=401) for _ in range(4)]
        batch += [_entry(ip="10.0.0.3", status=429, path="/api/auth/send-otp") for _ in range(20)]

        found = detect_suspicious_activity(batch)

        by_ip = {a.ip_address: a for a in found}
        assert set(by_ip) == {"10.0.0.1", "10.0.0.3"}
        assert by_ip["10.0.0.1"].activity_type == SuspiciousActivityType.MULTIPLE_FAILED_LOGINS
        assert by_ip["10.0.0.3"].metadata["endpoint"] == "/api/auth/send-otp"


class TestAuditPipeline:
    """Tests for batched persistence."""

    async def test_enqueue_is_flushed_in_background(self):
        store = MemoryStore()
        pipeline = AuditPipeline(store, batch_size=10)

        pipeline.enqueue(_entry())
        assert pipeline.pending == 1
        await pipeline.drain()

        assert pipeline.pending == 0
        assert len(store.audit_logs) == 1

    async def test_batches_respect_size(self):
        store = MagicMock()
        pipeline = AuditPipeline(store, batch_size=2)
        for _ in range(5):
            pipeline._queue.append(_entry())

        await pipeline.flush_once()

        assert len(store.insert_audit_logs.call_args[0][0]) == 2
        assert pipeline.pending == 3

    async def test_failed_write_is_requeued_in_order(self):
        store = MagicMock()
        store.insert_audit_logs.side_effect = RuntimeError("db down")
        pipeline = AuditPipeline(store, batch_size=2)
        first, second, third = _entry(ip="1.1.1.1"), _entry(ip="2.2.2.2"), _entry(ip="3.3.3.3")
        for entry in (first, second, third):
            pipeline._queue.append(entry)

        with patch("merchantauth.service.audit.logger") as mock_logger:
            ok = await pipeline.flush_once()

        assert ok is False
        assert list(pipeline._queue) == [first, second, third]
        assert mock_logger.error.call_args[0][0] == "audit_flush_failed"

    async def test_drain_stops_after_failure(self):
        store = MagicMock()
        store.insert_audit_logs.side_effect = RuntimeError("db down")
        pipeline = AuditPipeline(store, batch_size=10)
        pipeline._queue.append(_entry())

        with patch("merchantauth.service.audit.logger"):
            await pipeline.drain()

        assert pipeline.pending == 1
        assert store.insert_audit_logs.call_count == 1
        assert pipeline.processing is False

    async def test_suspicious_batch_is_logged(self):
        pipeline = AuditPipeline(MemoryStore(), batch_size=100)
        for _ in range(5):
            pipeline._queue.append(_entry(status=401))

        with patch("merchantauth.service.audit.logger") as mock_logger:
            await pipeline.flush_once()

        events = [call[0][0] for call in mock_logger.warning.call_args_list]
        assert "suspicious_activity_detected" in events

    async def test_entries_enqueued_during_flush_are_written(self):
        calls = []

        def record_insert(batch):
            calls.append(len(batch))
            return len(batch)

        store = MagicMock()
        store.insert_audit_logs.side_effect = record_insert
        pipeline = AuditPipeline(store, batch_size=100)

        pipeline.enqueue(_entry())
        pipeline.enqueue(_entry())
        await pipeline.drain()

        assert sum(calls) == 2
        assert pipeline.pending == 0

    def test_enqueue_without_loop_keeps_entry(self):
        pipeline = AuditPipeline(MemoryStore(), batch_size=10)

        pipeline.enqueue(_entry())

        assert pipeline.pending == 1
