"""E-mail notifications for critical soil moisture and pump activation."""

from __future__ import annotations

import asyncio
import logging
import os
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from html import escape
from typing import TYPE_CHECKING, Awaitable, Sequence

from sqlalchemy import select

from .models import User

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .db import Database

logger = logging.getLogger(__name__)


THRESHOLDS: dict[str, dict] = {
    "soil_moisture": {
        "unit": "%",
        "lines": [{"label": "Critical", "kind": "lower", "value": 20.0}],
    },
}


def evaluate_thresholds(metric: str, value: float, thresholds: dict[str, dict] | None = None) -> list[dict]:
    """Return the threshold entries that are breached by *value* for *metric*."""

    cfg = (thresholds or THRESHOLDS).get(metric)
    if not cfg or value is None:
        return []

    triggered: list[dict] = []
    for line in cfg.get("lines", []):
        try:
            threshold_value = float(line["value"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Invalid threshold configuration for metric '%s': %s", metric, line)
            continue

        kind = str(line.get("kind", "")).lower()
        if kind == "upper" and value > threshold_value:
            triggered.append(line)
        elif kind == "lower" and value < threshold_value:
            triggered.append(line)

    return triggered


@dataclass(frozen=True)
class ThresholdBreach:
    """A single soil sensor reading below its threshold."""

    metric: str
    sensor_number: int
    value: float
    threshold: float
    threshold_kind: str
    label: str
    unit: str


@dataclass(frozen=True)
class MoistureAlert:
    breaches: tuple[ThresholdBreach, ...]
    device_id: str
    temperature: float | None
    humidity: float | None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def soil_moisture_breaches(
    soil_values: Sequence[float | None], critical: float | None = None
) -> list[ThresholdBreach]:
    """Evaluate the three soil sensors, numbered from 1."""

    thresholds = THRESHOLDS
    if critical is not None:
        thresholds = {
            "soil_moisture": {
                "unit": "%",
                "lines": [{"label": "Critical", "kind": "lower", "value": float(critical)}],
            }
        }
    unit = thresholds["soil_moisture"]["unit"]

    breaches: list[ThresholdBreach] = []
    for number, value in enumerate(soil_values, start=1):
        if value is None:
            continue
        for line in evaluate_thresholds("soil_moisture", value, thresholds):
            breaches.append(
                ThresholdBreach(
                    metric="soil_moisture",
                    sensor_number=number,
                    value=value,
                    threshold=float(line["value"]),
                    threshold_kind=str(line.get("kind", "")),
                    label=str(line.get("label", "")),
                    unit=unit,
                )
            )
    return breaches


@dataclass
class SMTPSettings:
    host: str
    port: int
    use_ssl: bool
    use_starttls: bool
    user: str
    password: str
    from_addr: str
    to_addrs: list[str]
    timeout: int
    debug: bool


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_addresses(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [addr.strip() for addr in raw.split(",") if addr.strip()]


def load_smtp_settings() -> SMTPSettings:
    """Load SMTP settings from the environment with sensible defaults."""

    user = os.getenv("SMTP_USER", "")
    return SMTPSettings(
        host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        port=int(os.getenv("SMTP_PORT", "587")),
        use_ssl=_env_bool("SMTP_USE_SSL", False),
        use_starttls=_env_bool("SMTP_USE_STARTTLS", True),
        user=user,
        password=os.getenv("SMTP_PASSWORD", ""),
        from_addr=os.getenv("SMTP_FROM", user),
        to_addrs=_split_addresses(os.getenv("SMTP_TO")),
        timeout=int(os.getenv("SMTP_TIMEOUT", "15")),
        debug=_env_bool("SMTP_DEBUG", False),
    )


def _open_smtp_connection(settings: SMTPSettings) -> smtplib.SMTP:
    context = ssl.create_default_context()
    if settings.use_ssl:
        server: smtplib.SMTP = smtplib.SMTP_SSL(
            settings.host, settings.port, timeout=settings.timeout, context=context
        )
    else:
        server = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)

    if settings.debug:
        server.set_debuglevel(1)

    server.ehlo()
    if settings.use_starttls and not settings.use_ssl:
        server.starttls(context=context)
        server.ehlo()

    if settings.user and settings.password:
        server.login(settings.user, settings.password)

    return server


def _normalize_recipients(addresses: Sequence[str] | None) -> list[str]:
    if not addresses:
        return []
    seen: set[str] = set()
    normalized: list[str] = []
    for addr in addresses:
        if not isinstance(addr, str):
            continue
        trimmed = addr.strip()
        if not trimmed or trimmed in seen:
            continue
        normalized.append(trimmed)
        seen.add(trimmed)
    return normalized


def _send_message(
    subject: str,
    text: str,
    html: str | None,
    settings: SMTPSettings,
    recipients: Sequence[str],
) -> bool:
    try:
        server = _open_smtp_connection(settings)
    except Exception:
        logger.exception("Failed to open SMTP connection")
        return False

    try:
        msg = EmailMessage()
        msg["From"] = f"EcoFlow System <{settings.from_addr}>"
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg["X-Priority"] = "1"
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        server.send_message(msg)
        return True
    except Exception:
        logger.exception("Failed to send email with subject '%s'", subject)
        return False
    finally:
        try:
            server.quit()
        except Exception:
            logger.exception("Failed to close SMTP connection")


class Mailer:
    """SMTP sender with background task tracking.

    Created once per process by the application lifespan. ``schedule`` runs a
    notification coroutine without blocking the request that triggered it;
    ``shutdown`` waits for anything still in flight.
    """

    def __init__(self, settings: SMTPSettings | None):
        self.settings = settings
        self._tasks: set[asyncio.Task] = set()
        self._started = False

    @property
    def enabled(self) -> bool:
        s = self.settings
        return bool(self._started and s and s.host and s.from_addr)

    async def init(self) -> None:
        self._started = True
        if not self.enabled:
            logger.warning("Email service not configured; notifications will be skipped")
        else:
            logger.info("Email service ready (%s:%s)", self.settings.host, self.settings.port)

    async def shutdown(self, timeout: float = 30.0) -> None:
        pending = list(self._tasks)
        if pending:
            logger.info("Waiting for %d notification(s) to finish", len(pending))
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            for task in not_done:
                task.cancel()
        self._started = False

    def schedule(self, coro: Awaitable[None], description: str) -> asyncio.Task | None:
        if not self.enabled:
            logger.info("Email service not available; skipping %s", description)
            close = getattr(coro, "close", None)
            if close:
                close()
            return None

        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                logger.warning("Notification cancelled: %s", description)
            elif t.exception() is not None:
                logger.error("Notification failed: %s", description, exc_info=t.exception())

        task.add_done_callback(_done)
        return task

    async def send(
        self,
        subject: str,
        text: str,
        html: str | None = None,
        to_addrs: Sequence[str] | None = None,
    ) -> bool:
        if not self.enabled:
            logger.warning("Email service not available; skipping email with subject '%s'", subject)
            return False
        recipients = _normalize_recipients(list(to_addrs or []) + list(self.settings.to_addrs))
        if not recipients:
            logger.warning("No recipients found; skipping email with subject '%s'", subject)
            return False
        loop = asyncio.get_running_loop()
        sent = await loop.run_in_executor(
            None, _send_message, subject, text, html, self.settings, recipients
        )
        if sent:
            logger.info("Email '%s' sent to %d recipient(s)", subject, len(recipients))
        return sent


async def get_active_user_emails(session: "AsyncSession") -> list[str]:
    stmt = select(User.email).where(User.is_active.is_(True), User.email != "")
    rows = await session.execute(stmt)
    return [email for (email,) in rows.all() if email]


def _format_moisture_text(alert: MoistureAlert) -> str:
    parts = [
        "CRITICAL: Low Soil Moisture Detected",
        "",
        "The following soil sensors have detected critically low moisture levels:",
        *[
            f"- Sensor {b.sensor_number}: {b.value}{b.unit} (Critical: <{b.threshold:g}{b.unit})"
            for b in alert.breaches
        ],
        "",
        f"Device: {alert.device_id}",
        f"Recorded at: {alert.recorded_at.isoformat()}",
        f"Temperature: {alert.temperature if alert.temperature is not None else 'N/A'} °C",
        f"Humidity: {alert.humidity if alert.humidity is not None else 'N/A'} %",
        "",
        "Action required: immediate watering is recommended to prevent plant stress and damage.",
    ]
    return "\n".join(parts)


def _format_moisture_html(alert: MoistureAlert) -> str:
    items = "".join(
        f"<li>Sensor {b.sensor_number}: <strong>{b.value}{escape(b.unit)}</strong> "
        f"(Critical: &lt;{b.threshold:g}{escape(b.unit)})</li>"
        for b in alert.breaches
    )
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px;\">"
        "<h2 style=\"color: #dc2626;\">Critical Soil Moisture Alert</h2>"
        "<p>The following soil sensors have detected <strong>critically low moisture levels</strong>:</p>"
        f"<ul>{items}</ul>"
        f"<p><strong>Device:</strong> {escape(alert.device_id)}<br>"
        f"<strong>Recorded at:</strong> {alert.recorded_at.isoformat()}</p>"
        "<p><strong>Action required:</strong> immediate watering is recommended.</p>"
        "</div>"
    )


async def send_critical_moisture_alert(database: "Database", mailer: Mailer, alert: MoistureAlert) -> bool:
    """Notify every active user about a critically dry reading."""

    if not alert.breaches:
        return False
    async with database.session() as session:
        recipients = await get_active_user_emails(session)
    return await mailer.send(
        "CRITICAL: Low Soil Moisture Detected - EcoFlow System",
        _format_moisture_text(alert),
        _format_moisture_html(alert),
        to_addrs=recipients,
    )


async def send_pump_activation_alert(
    database: "Database",
    mailer: Mailer,
    *,
    command_id: int,
    requested_by: str | None,
    executed_at: datetime | None,
) -> bool:
    async with database.session() as session:
        recipients = await get_active_user_emails(session)
    when = (executed_at or datetime.now(timezone.utc)).isoformat()
    text = "\n".join(
        [
            "Sprinkler System Activated",
            "",
            "The sprinkler system (water pump) has been activated.",
            f"Command: #{command_id}",
            f"Activated by: {requested_by or 'System'}",
            f"Executed at: {when}",
        ]
    )
    return await mailer.send(
        "Sprinkler System Activated - EcoFlow System", text, to_addrs=recipients
    )
