from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Literal, Protocol

from .business_calendar import business_day, resolve_timezone
from .order_view import OrderSnapshot
from .phases import PhasePolicy

logger = logging.getLogger(__name__)

ProviderResultStatus = Literal["sent", "failed"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReminderSendRequest:
    order_id: str
    order_nbr: str
    customer_name: str
    phase_id: str
    phase_label: str
    contact_target: str
    delivery_date: date


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class NotifyOutcome:
    ok: bool
    provider_message_id: str | None = None
    error_code: str | None = None


class ReminderSender(Protocol):
    def send_reminder(self, payload: ReminderSendRequest) -> ProviderSendResult: ...


def render_reminder_message(payload: ReminderSendRequest) -> str:
    greeting = f"Hello {payload.customer_name}," if payload.customer_name else "Hello,"
    return (
        f"{greeting} your delivery for order {payload.order_nbr} is scheduled {payload.phase_label} "
        f"out, on {payload.delivery_date.isoformat()}. Please confirm the delivery date."
    )


class StubReminderSender:
    def __init__(self, *, enabled: bool, channel: str = "email") -> None:
        self._enabled = enabled
        self._channels = {item.strip().lower() for item in channel.split(",") if item.strip()} or {"email"}

    def send_reminder(self, payload: ReminderSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live reminder delivery is disabled",
            )

        if "email" not in self._channels:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error_message=f"Configured channels are {', '.join(sorted(self._channels))}",
            )

        if "fail" in payload.contact_target.lower():
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for contact target",
            )

        message_id = f"stub-{payload.phase_id}-{payload.order_id}-{int(attempted_at.timestamp())}"
        return ProviderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _NotifierSendError(Exception):
    """Internal error raised when a notifier HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpReminderSender:
    """Production sender that delivers reminders via the messaging HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 30,
        business_timezone: str = "America/Denver",
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds
        self._tz = resolve_timezone(business_timezone)

    def send_reminder(self, payload: ReminderSendRequest) -> ProviderSendResult:
        attempted_at = _now_utc()
        # One key per order, phase and local business day.
        send_day = business_day(attempted_at, self._tz)
        request_payload = {
            "channel": "email",
            "recipient": payload.contact_target,
            "message": render_reminder_message(payload),
            "idempotency_key": f"{payload.phase_id}-{payload.order_id}-{send_day.isoformat()}",
        }

        try:
            response_data = self._post(request_payload)
        except _NotifierSendError as exc:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_contact_target(payload.contact_target)})",
            )
        message_id = response_data.get("message_id")
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )

    def _post(self, body: dict[str, str]) -> dict[str, object]:
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _NotifierSendError(
                error_code="invalid_response",
                message="Response body was not valid JSON",
            ) from exc


class Notifier:
    """Best-effort reminder delivery; failures come back as outcomes, never as exceptions."""

    def __init__(self, sender: ReminderSender) -> None:
        self._sender = sender

    def notify(self, order: OrderSnapshot, policy: PhasePolicy) -> NotifyOutcome:
        target = order.contact_target
        if target is None or order.delivery_date is None:
            return NotifyOutcome(ok=False, error_code="recipient_missing")

        payload = ReminderSendRequest(
            order_id=order.order_id,
            order_nbr=order.order_nbr,
            customer_name=order.customer_name,
            phase_id=policy.phase_id,
            phase_label=policy.label,
            contact_target=target,
            delivery_date=order.delivery_date,
        )
        try:
            result = self._sender.send_reminder(payload)
        except Exception:
            logger.exception(
                "reminder send raised for order=%s phase=%s recipient=%s",
                order.order_id,
                policy.phase_id,
                mask_contact_target(target),
            )
            return NotifyOutcome(ok=False, error_code="sender_exception")

        if result.status == "sent":
            return NotifyOutcome(ok=True, provider_message_id=result.provider_message_id)

        logger.warning(
            "reminder send failed for order=%s phase=%s recipient=%s: %s %s",
            order.order_id,
            policy.phase_id,
            mask_contact_target(target),
            result.error_code,
            result.error_message,
        )
        return NotifyOutcome(ok=False, error_code=result.error_code)


def mask_contact_target(contact_target: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"


def create_notifier(
    *,
    sender_type: str,
    enabled: bool,
    channel: str,
    base_url: str,
    api_key: str,
    timeout_seconds: int,
    business_timezone: str = "America/Denver",
) -> Notifier:
    if sender_type.strip().lower() == "http":
        return Notifier(
            HttpReminderSender(
                base_url=base_url,
                api_key=api_key,
                timeout_seconds=timeout_seconds,
                business_timezone=business_timezone,
            )
        )
    return Notifier(StubReminderSender(enabled=enabled, channel=channel))
