from __future__ import annotations

import asyncio
import secrets
import string
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from ipaddress import ip_address
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from merchantauth.logging import get_logger
from merchantauth.storage.models import AuditLogEntry

logger = get_logger(__name__)

MASK_TOKEN = "***MASKED***"
DEFAULT_SENSITIVE_FIELDS = ("password", "token", "otp", "pin", "secret", "apiKey", "authorization")

FAILED_LOGIN_WINDOW_MINUTES = 15

_EXCLUDED_PATHS = frozenset({"/health", "/redoc", "/docs", "/openapi.json"})
_EXCLUDED_PREFIXES = ("/api-docs", "/docs/")
_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def is_audit_excluded(path: str) -> bool:
    return path in _EXCLUDED_PATHS or path.startswith(_EXCLUDED_PREFIXES)


def mask_sensitive_data(data: Any, fields: Sequence[str] = DEFAULT_SENSITIVE_FIELDS) -> Any:
    """Replace values whose key contains a sensitive substring, at any depth.

    Matching is case-insensitive on both sides, so ``apiKey`` also catches
    ``x_apikey``.
    """
    needles = tuple(f.lower() for f in fields)
    return _mask(data, needles)


def _mask(data: Any, needles: tuple[str, ...]) -> Any:
    if isinstance(data, dict):
        masked: Dict[Any, Any] = {}
        for key, value in data.items():
            lower_key = str(key).lower()
            if any(needle in lower_key for needle in needles):
                masked[key] = MASK_TOKEN
            else:
                masked[key] = _mask(value, needles)
        return masked
    if isinstance(data, (list, tuple)):
        return [_mask(item, needles) for item in data]
    return data


def _normalize_ip(raw: str) -> str:
    value = raw.strip()
    try:
        parsed = ip_address(value)
    except ValueError:
        return value
    mapped = getattr(parsed, "ipv4_mapped", None)
    return str(mapped) if mapped else str(parsed)


def extract_client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Resolve the client address behind the reverse proxy.

    Precedence: ``X-Forwarded-For`` (first entry), ``X-Real-IP``,
    ``CF-Connecting-IP``, then the socket peer. ``unknown`` when none is present.
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return _normalize_ip(first)
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header)
        if value and value.strip():
            return _normalize_ip(value)
    if peer:
        return _normalize_ip(peer)
    return "unknown"


def generate_session_id() -> str:
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(13))
    return f"sess_{int(time.time() * 1000)}_{suffix}"


def action_type_for(path: str, method: str) -> Optional[str]:
    lower_path = path.lower()
    lower_method = method.lower()
    if "/auth/signup" in lower_path or "/auth/register" in lower_path:
        return "signup"
    if "/auth/signin" in lower_path or "/auth/login" in lower_path:
        return "signin"
    if "/auth/send-otp" in lower_path:
        return "send_otp"
    if "/auth/verify-otp" in lower_path:
        return "verify_otp"
    if "/auth/logout" in lower_path:
        return "logout"
    if "/merchant" in lower_path and lower_method == "get":
        return "get_merchant"
    if "/merchant" in lower_path and lower_method == "put":
        return "update_merchant"
    return None


def build_audit_entry(
    *,
    session_id: str,
    method: str,
    path: str,
    url: str,
    query: Optional[Mapping[str, Any]],
    body: Any,
    ip_address: str,
    user_agent: Optional[str],
    status: int,
    elapsed_ms: int,
    principal: Optional[Mapping[str, Any]] = None,
    route_name: Optional[str] = None,
    sensitive_fields: Sequence[str] = DEFAULT_SENSITIVE_FIELDS,
) -> AuditLogEntry:
    action = action_type_for(path, method)
    metadata: Dict[str, Any] = {"url": url}
    # Sign-in geolocation is business data and is kept unmasked
    if action == "signin" and isinstance(body, dict):
        latitude, longitude = body.get("latitude"), body.get("longitude")
        place = body.get("location")
        if latitude is not None and longitude is not None and place:
            metadata["location"] = {
                "latitude": latitude,
                "longitude": longitude,
                "location": place,
            }
    principal = principal or {}
    user_id = principal.get("user_id")
    return AuditLogEntry(
        session_id=session_id,
        user_id=int(user_id) if user_id is not None else None,
        merchant_id=principal.get("merchant_id") or None,
        email=principal.get("email") or None,
        ip_address=ip_address,
        user_agent=user_agent,
        request_method=method,
        request_path=path,
        request_query=dict(query) if query else None,
        request_body=mask_sensitive_data(body, sensitive_fields) if body is not None else None,
        response_status=status,
        response_time_ms=elapsed_ms,
        route_name=route_name or path,
        action_type=action,
        metadata=metadata,
    )


class SuspiciousActivityType(str, Enum):
    MULTIPLE_FAILED_LOGINS = "multiple_failed_logins"
    RATE_LIMIT_ABUSE = "rate_limit_abuse"
    UNUSUAL_PATTERN = "unusual_pattern"
    SUSPICIOUS_IP = "suspicious_ip"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class SuspiciousActivity:
    activity_type: SuspiciousActivityType
    ip_address: str
    severity: Severity
    description: str
    user_id: Optional[int] = None
    merchant_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def check_failed_login_attempts(
    ip: str, failed_attempts: int, window_minutes: int = FAILED_LOGIN_WINDOW_MINUTES
) -> Optional[SuspiciousActivity]:
    if failed_attempts >= 10:
        severity = Severity.CRITICAL
    elif failed_attempts >= 5:
        severity = Severity.HIGH
    else:
        return None
    return SuspiciousActivity(
        activity_type=SuspiciousActivityType.MULTIPLE_FAILED_LOGINS,
        ip_address=ip,
        severity=severity,
        description=(
            f"{failed_attempts} failed login attempts from IP {ip} in {window_minutes} minutes"
        ),
        metadata={"failed_attempts": failed_attempts, "time_window_minutes": window_minutes},
    )


def check_rate_limit_abuse(ip: str, violations: int, endpoint: str) -> Optional[SuspiciousActivity]:
    if violations >= 50:
        severity = Severity.CRITICAL
    elif violations >= 20:
        severity = Severity.HIGH
    else:
        return None
    return SuspiciousActivity(
        activity_type=SuspiciousActivityType.RATE_LIMIT_ABUSE,
        ip_address=ip,
        severity=severity,
        description=f"IP {ip} has {violations} rate limit violations on {endpoint}",
        metadata={"violations": violations, "endpoint": endpoint},
    )


def detect_suspicious_activity(batch: Iterable[AuditLogEntry]) -> List[SuspiciousActivity]:
    """Group a flushed batch by client address and apply the alert thresholds."""
    by_ip: Dict[str, List[AuditLogEntry]] = {}
    for entry in batch:
        by_ip.setdefault(entry.ip_address or "unknown", []).append(entry)

    found: List[SuspiciousActivity] = []
    for ip, entries in by_ip.items():
        failed = [
            e for e in entries if e.action_type == "signin" and e.response_status == 401
        ]
        activity = check_failed_login_attempts(ip, len(failed))
        if activity:
            found.append(activity)

        limited = [e for e in entries if e.response_status == 429]
        if limited:
            activity = check_rate_limit_abuse(ip, len(limited), limited[0].request_path)
            if activity:
                found.append(activity)
    return found


def log_suspicious_activity(activity: SuspiciousActivity) -> None:
    logger.warning(
        "suspicious_activity_detected",
        activity_type=activity.activity_type.value,
        severity=activity.severity.value,
        ip_address=activity.ip_address,
        description=activity.description,
        metadata=activity.metadata,
    )


class AuditPipeline:
    """Non-blocking audit writer.

    Entries are queued in memory and written in batches by a background task.
    A single ``_processing`` flag keeps at most one flush in flight; entries
    arriving meanwhile are picked up by the next cycle. A failed write puts the
    batch back at the head of the queue and waits for the next enqueue (or
    ``drain``) to retry.

    The queue is per process; entries still queued when a process dies are lost.
    """

    def __init__(self, store, *, batch_size: int = 100) -> None:
        self.store = store
        self.batch_size = batch_size
        self._queue: Deque[AuditLogEntry] = deque()
        self._processing = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> bool:
        return self._processing

    def enqueue(self, entry: AuditLogEntry) -> None:
        self._queue.append(entry)
        if not self._processing:
            self._schedule()

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); the next enqueue or drain picks it up
            return
        task = loop.create_task(self._process())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _requeue(self, batch: List[AuditLogEntry]) -> None:
        self._queue.extendleft(reversed(batch))

    async def flush_once(self) -> bool:
        """Write one batch; returns False when the write failed."""
        if not self._queue:
            return True
        batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]
        try:
            await asyncio.to_thread(self.store.insert_audit_logs, batch)
        except asyncio.CancelledError:
            self._requeue(batch)
            raise
        except Exception as exc:
            self._requeue(batch)
            logger.error(
                "audit_flush_failed",
                batch_size=len(batch),
                pending=len(self._queue),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.debug("audit_batch_flushed", count=len(batch))
        try:
            for activity in detect_suspicious_activity(batch):
                log_suspicious_activity(activity)
        except Exception as exc:
            logger.error("audit_scan_failed", error_type=type(exc).__name__, error=str(exc))
        return True

    async def _process(self) -> None:
        if self._processing or not self._queue:
            return
        self._processing = True
        ok = False
        try:
            ok = await self.flush_once()
        finally:
            self._processing = False
        if ok and self._queue:
            self._schedule()

    async def drain(self) -> None:
        """Flush until the queue is empty or a write fails; used at shutdown."""
        loop = asyncio.get_running_loop()
        while True:
            running = [t for t in self._tasks if t.get_loop() is loop and not t.done()]
            if not running:
                break
            await asyncio.gather(*running, return_exceptions=True)
        while self._queue:
            if self._processing:
                # Flush owned by another event loop
                logger.warning("audit_drain_busy", pending=len(self._queue))
                break
            self._processing = True
            try:
                ok = await self.flush_once()
            finally:
                self._processing = False
            if not ok:
                logger.warning("audit_drain_incomplete", pending=len(self._queue))
                break
