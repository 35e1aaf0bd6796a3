"""Synthetic audit events for development environments.

Only used when ``seed_fixtures`` is enabled. Fixtures go through the
recorder like any other event, so they are classified, sanitized and
timestamped exactly as real traffic. The query path never falls back to
them.
"""

import logging
import random

from shield_audit.audit.models import AuditEventType, RawEvent
from shield_audit.audit.recorder import AuditRecorder

logger = logging.getLogger(__name__)

FIXTURE_USERS = ("user-1001", "user-1002", "user-1003", "clinician-2001", "admin-1")
FIXTURE_IPS = ("10.0.0.12", "10.0.0.37", "192.168.1.20", "203.0.113.9")
FIXTURE_AGENTS = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36",
    "ShieldMobile/2.3 (iPhone; iOS 17.1)",
)

# (event_type, resource_type, action, endpoint, method)
FIXTURE_TEMPLATES = (
    (AuditEventType.DATA_ACCESS, "sleep_data", "read", "/api/sleep", "GET"),
    (AuditEventType.DATA_ACCESS, "health_metrics", "read", "/api/metrics", "GET"),
    (AuditEventType.DATA_MODIFICATION, "user_profile", "update", "/api/profile", "PUT"),
    (AuditEventType.LAB_REPORT_UPLOAD, "lab_reports", "upload", "/api/labs", "POST"),
    (AuditEventType.BIOMARKER_EXTRACTION, "biomarkers", "extract", "/api/biomarkers", "POST"),
    (AuditEventType.LOGIN_ATTEMPT, "user_data", "login", "/api/auth/login", "POST"),
    (AuditEventType.EXPORT_DATA, "lab_reports", "export", "/api/labs/export", "GET"),
    (AuditEventType.API_REQUEST, "health_alerts", "list", "/api/alerts", "GET"),
)


def build_fixture_events(count: int, seed: int = 7) -> list[RawEvent]:
    """Build ``count`` reproducible synthetic events."""
    rng = random.Random(seed)
    events = []
    for i in range(count):
        event_type, resource_type, action, endpoint, method = FIXTURE_TEMPLATES[
            i % len(FIXTURE_TEMPLATES)
        ]
        success = rng.random() > 0.1
        events.append(
            RawEvent(
                event_type=event_type.value,
                user_id=rng.choice(FIXTURE_USERS),
                action=action,
                resource_type=resource_type,
                resource_id=f"{resource_type}-{rng.randint(1, 500)}",
                ip_address=rng.choice(FIXTURE_IPS),
                user_agent=rng.choice(FIXTURE_AGENTS),
                success=success,
                details={
                    "api_endpoint": endpoint,
                    "http_method": method,
                    "duration_ms": rng.randint(20, 900),
                    "response_status": 200 if success else 403,
                    "cache_hit": rng.random() > 0.5,
                    "session_id": f"sess-{rng.randint(1, 8)}",
                    "fixture": True,
                },
            )
        )
    return events


async def seed_fixtures(recorder: AuditRecorder, count: int) -> int:
    """Record ``count`` fixture events. Returns how many were persisted."""
    persisted = 0
    for event in build_fixture_events(count):
        result = await recorder.record(event)
        if result.persisted:
            persisted += 1
    logger.info(f"Seeded {persisted}/{count} fixture audit events")
    return persisted
