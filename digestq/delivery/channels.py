"""
Channel transports.

- SmtpEmailTransport ("email"): SMTP handoff is terminal (no confirmation),
  suppressed during quiet hours.
- WebhookPushTransport ("realtime"): HTTP push; the receiver confirms
  delivery later through the ack endpoint. Not suppressed by quiet hours.
- InstrumentedTransport: wraps any transport with timing and counters,
  without touching the transport itself.

Transports report rejections as SendResult.rejected(...) and raise
TransportError for transport-level failures; the dispatcher's RetryPolicy
decides what happens next.
"""

from __future__ import annotations

import smtplib
from collections.abc import Callable
from datetime import UTC, datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

import requests

from digestq.config import DELIVERY_TIMEOUT_SECONDS
from digestq.contracts import ChannelTransport
from digestq.delivery.models import SendResult
from digestq.infrastructure.errors import TransportError
from digestq.infrastructure.settings import (
    REALTIME_PUSH_TOKEN,
    REALTIME_PUSH_URL,
    SMTP_FROM_EMAIL,
    SMTP_FROM_NAME,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USER,
)
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter, time_block
from digestq.storage.models import Granularity, Summary
from digestq.utils.redaction import redact

logger = get_logger(__name__)

EMAIL_CHANNEL = "email"
REALTIME_CHANNEL = "realtime"


def _address_from_recipient_id(recipient_id: str) -> str | None:
    return recipient_id if "@" in recipient_id else None


def render_plaintext(summary: Summary) -> str:
    lines = [summary.headline or "", ""]
    lines.extend(f"- {bullet}" for bullet in summary.bullets)
    return "\n".join(lines).strip() + "\n"


def render_html(summary: Summary) -> str:
    bullets = "".join(f"<li>{escape(bullet)}</li>" for bullet in summary.bullets)
    return (
        "<html><body>"
        f"<h2>{escape(summary.headline or '')}</h2>"
        f"<ul>{bullets}</ul>"
        "</body></html>"
    )


class SmtpEmailTransport:
    """Email channel over SMTP with STARTTLS."""

    channel = EMAIL_CHANNEL
    requires_ack = False
    suppressed_in_quiet_hours = True

    def __init__(
        self,
        smtp_host: str | None = None,
        smtp_port: int | None = None,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        from_email: str | None = None,
        from_name: str = SMTP_FROM_NAME,
        resolve_address: Callable[[str], str | None] = _address_from_recipient_id,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
    ):
        self.smtp_host = smtp_host or SMTP_HOST
        self.smtp_port = smtp_port or SMTP_PORT
        self.smtp_user = smtp_user or SMTP_USER
        self.smtp_password = smtp_password or SMTP_PASSWORD
        self.from_email = from_email or SMTP_FROM_EMAIL or self.smtp_user
        self.from_name = from_name
        self.resolve_address = resolve_address
        self.timeout = timeout

        self.enabled = all([self.smtp_host, self.smtp_user, self.smtp_password, self.from_email])
        if not self.enabled:
            logger.warning("SMTP not fully configured. Set SMTP_* environment variables.")

    def build_message(self, to_email: str, summary: Summary) -> MIMEMultipart:
        prefix = "Daily recap" if summary.granularity is Granularity.DAILY else "Digest"
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"{prefix}: {summary.headline}"
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Date"] = datetime.now(UTC).strftime("%a, %d %b %Y %H:%M:%S %z")
        msg["X-DigestQ-Summary"] = summary.summary_id
        msg.attach(MIMEText(render_plaintext(summary), "plain"))
        msg.attach(MIMEText(render_html(summary), "html"))
        return msg

    def send(self, recipient_id: str, summary: Summary) -> SendResult:
        if not self.enabled:
            return SendResult.rejected("smtp not configured", retryable=False)

        to_email = self.resolve_address(recipient_id)
        if not to_email:
            return SendResult.rejected("no email address for recipient", retryable=False)

        msg = self.build_message(to_email, summary)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.smtp_user or "", self.smtp_password or "")
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult.rejected(f"recipient refused: {e}", retryable=False)
        except smtplib.SMTPAuthenticationError as e:
            raise TransportError(f"smtp authentication failed: {e.smtp_code}", retryable=False) from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"smtp send failed: {e}") from e

        logger.info("Digest email sent to %s", redact(to_email))
        return SendResult.ok(transport_ref=msg["X-DigestQ-Summary"])


class WebhookPushTransport:
    """Real-time channel: POST the summary to a push gateway."""

    channel = REALTIME_CHANNEL
    requires_ack = True
    suppressed_in_quiet_hours = False

    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.url = url or REALTIME_PUSH_URL
        self.token = token or REALTIME_PUSH_TOKEN
        self.timeout = timeout
        self.session = session or requests.Session()

    def payload(self, recipient_id: str, summary: Summary) -> dict[str, object]:
        return {
            "recipient_id": recipient_id,
            "summary_id": summary.summary_id,
            "granularity": summary.granularity.value,
            "headline": summary.headline,
            "bullets": list(summary.bullets),
            "ack_path": f"/deliveries/{summary.summary_id}/{self.channel}/ack",
        }

    def send(self, recipient_id: str, summary: Summary) -> SendResult:
        if not self.url:
            return SendResult.rejected("push url not configured", retryable=False)

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self.session.post(
                self.url,
                json=self.payload(recipient_id, summary),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransportError(f"push timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransportError(f"push request failed: {e}") from e

        if response.status_code >= 400:
            error = TransportError(
                f"push rejected with HTTP {response.status_code}", status_code=response.status_code
            )
            if error.retryable:
                raise error
            return SendResult.rejected(str(error), retryable=False)

        transport_ref = None
        try:
            body = response.json()
            if isinstance(body, dict):
                transport_ref = body.get("id")
        except ValueError:
            pass
        return SendResult.ok(transport_ref=str(transport_ref) if transport_ref else None)


class InstrumentedTransport:
    """Adds latency and outcome counters around any ChannelTransport."""

    def __init__(self, inner: ChannelTransport):
        self.inner = inner

    @property
    def channel(self) -> str:
        return self.inner.channel

    @property
    def requires_ack(self) -> bool:
        return self.inner.requires_ack

    @property
    def suppressed_in_quiet_hours(self) -> bool:
        return self.inner.suppressed_in_quiet_hours

    def send(self, recipient_id: str, summary: Summary) -> SendResult:
        prefix = f"delivery.{self.channel}"
        try:
            with time_block(f"{prefix}.send.latency"):
                result = self.inner.send(recipient_id, summary)
        except TransportError:
            counter(f"{prefix}.transport_error")
            raise
        counter(f"{prefix}.accepted" if result.accepted else f"{prefix}.rejected")
        return result


def default_transports() -> dict[str, ChannelTransport]:
    """Production transports keyed by channel, each instrumented."""
    transports: list[ChannelTransport] = [SmtpEmailTransport(), WebhookPushTransport()]
    return {t.channel: InstrumentedTransport(t) for t in transports}
