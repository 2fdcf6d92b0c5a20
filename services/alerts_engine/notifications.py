"""Push notifications for newly opened alerts (Expo push service)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx

from shared.config import bool_env, csv_env, optional_env
from shared.logging import log_event
from shared.utils import utc_now

from alerts_engine.models import Alert, Severity

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_CHUNK_SIZE = 100
DEFAULT_ENABLED_ROLES = ["owner", "admin", "facilities"]
KNOWN_ROLES = {"owner", "admin", "facilities", "contractor"}
ELIGIBLE_SEVERITIES = {Severity.CRITICAL.value, "high"}
EXPO_TOKEN_RE = re.compile(r"^Expo(nent)?PushToken\[.+\]$")


@dataclass
class DispatchResult:
    attempted: int = 0
    sent: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


@dataclass(frozen=True)
class PushSettings:
    disabled: bool
    access_token: str
    enabled_roles: tuple[str, ...]

    @classmethod
    def from_env(cls) -> "PushSettings":
        roles = [r for r in csv_env("PUSH_NOTIFICATIONS_ENABLED_ROLES", DEFAULT_ENABLED_ROLES) if r in KNOWN_ROLES]
        return cls(
            disabled=bool_env("PUSH_NOTIFICATIONS_DISABLED", False),
            access_token=optional_env("EXPO_ACCESS_TOKEN", "").strip(),
            enabled_roles=tuple(roles or DEFAULT_ENABLED_ROLES),
        )


def is_expo_push_token(token: str) -> bool:
    return bool(token) and EXPO_TOKEN_RE.match(token) is not None


def mask_token(token: str) -> str:
    return f"***{token[-6:]}" if token else ""


async def get_organisation_id_for_alert(conn, alert_id: str) -> Optional[str]:
    return await conn.fetchval(
        """
        SELECT s.organisation_id
        FROM alerts a
        LEFT JOIN devices d ON d.id = a.device_id
        LEFT JOIN sites s ON s.id = COALESCE(a.site_id, d.site_id)
        WHERE a.id = $1
        LIMIT 1
        """,
        alert_id,
    )


async def get_push_tokens_for_roles(conn, org_id: str, roles: tuple[str, ...]) -> list[dict]:
    rows = await conn.fetch(
        """
        SELECT pt.user_id, pt.expo_push_token, pt.is_active
        FROM push_tokens pt
        JOIN users u ON u.id = pt.user_id
        WHERE u.organisation_id = $1
          AND u.role = ANY($2::text[])
          AND pt.is_active = true
        """,
        org_id,
        list(roles),
    )
    return [dict(r) for r in rows]


def build_alert_message(alert: Alert, org_id: str, token: str) -> dict:
    return {
        "to": token,
        "sound": "default",
        "title": f"[{alert.severity.value.upper()}] {alert.type.value}",
        "body": alert.message,
        "data": {
            "type": "alert",
            "alertId": alert.id,
            "deviceId": alert.device_id,
            "siteId": alert.site_id,
            "orgId": org_id,
            "severity": alert.severity.value,
            "alertType": alert.type.value,
        },
    }


async def send_expo_push_messages(
    messages: list[dict],
    access_token: str,
    client: Optional[httpx.AsyncClient] = None,
) -> tuple[int, list[str]]:
    """
    Post messages in chunks. A failed chunk or error ticket is recorded and
    delivery continues with the rest. Returns (sent, errors).
    """
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
    }
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=10.0)
    sent = 0
    errors: list[str] = []
    try:
        for start in range(0, len(messages), EXPO_CHUNK_SIZE):
            chunk = messages[start:start + EXPO_CHUNK_SIZE]
            try:
                response = await client.post(EXPO_PUSH_URL, json=chunk, headers=headers)
                response.raise_for_status()
                tickets = response.json().get("data") or []
            except (httpx.HTTPError, ValueError) as exc:
                log_event(logger, "expo push chunk failed", level="ERROR", error=str(exc), size=len(chunk))
                errors.append(str(exc) or type(exc).__name__)
                continue
            for message, ticket in zip(chunk, tickets):
                if ticket.get("status") == "ok":
                    sent += 1
                    continue
                reason = ticket.get("message") or "push ticket error"
                log_event(
                    logger,
                    "push ticket rejected",
                    level="WARNING",
                    token=mask_token(message["to"]),
                    reason=reason,
                )
                errors.append(reason)
    finally:
        if owns_client:
            await client.aclose()
    return sent, errors


async def send_alert_notification(
    conn,
    alert: Alert,
    settings: Optional[PushSettings] = None,
    client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """Best-effort push for a new alert. Delivery problems never raise."""
    settings = settings or PushSettings.from_env()
    org_id = await get_organisation_id_for_alert(conn, alert.id)
    if not org_id:
        log_event(logger, "skipping alert push, organisation unknown", level="WARNING", alert_id=alert.id)
        return DispatchResult(skipped_reason="org_unknown")
    org_id = str(org_id)
    if settings.disabled:
        return DispatchResult(skipped_reason="disabled")
    if alert.severity.value not in ELIGIBLE_SEVERITIES:
        return DispatchResult(skipped_reason="severity_not_eligible")
    # Freshly raised alerts are never muted; this covers callers re-sending an existing alert.
    if alert.muted_until and alert.muted_until > (now or utc_now()):
        log_event(logger, "skipping notification for muted alert", alert_id=alert.id)
        return DispatchResult(skipped_reason="muted")

    tokens = await get_push_tokens_for_roles(conn, org_id, settings.enabled_roles)
    if not tokens:
        return DispatchResult(skipped_reason="no_recipients")

    seen: set[str] = set()
    messages = []
    for row in tokens:
        token = row["expo_push_token"]
        if not row.get("is_active", True) or token in seen:
            continue
        if not is_expo_push_token(token):
            log_event(logger, "invalid Expo push token", level="WARNING", token=mask_token(token))
            continue
        seen.add(token)
        messages.append(build_alert_message(alert, org_id, token))

    if not messages:
        return DispatchResult(skipped_reason="no_valid_tokens")
    if not settings.access_token:
        log_event(logger, "EXPO_ACCESS_TOKEN not configured; skipping push send", level="WARNING")
        return DispatchResult(
            attempted=len(messages),
            errors=["EXPO_ACCESS_TOKEN missing"],
            skipped_reason="not_configured",
        )

    sent, errors = await send_expo_push_messages(messages, settings.access_token, client=client)
    result = DispatchResult(attempted=len(messages), sent=sent, errors=errors)
    if errors:
        log_event(logger, "error sending push notifications for alert", level="ERROR", alert_id=alert.id, errors=errors)
    elif sent:
        log_event(logger, "push tickets sent for alert", alert_id=alert.id, sent=sent)
    return result
