"""Outbound mail transports.

A transport takes a fully composed `OutboundEmail` (body, recipients and
threading headers already decided by `email_composer`) and returns the
RFC 5322 Message-ID assigned to the sent mail. Failures raise
`MailTransportError`; callers decide whether that is fatal (live reply) or
retried later (scheduled delivery).
"""

from __future__ import annotations

import base64
import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol

import anyio
import httpx

from app.core.config import settings
from app.services.http_service import DEFAULT_RETRY_STATUSES, request_with_retries

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_RETRY_MAX_DELAY = 4.0


class MailTransportError(Exception):
    """Raised when an outbound email could not be handed to the provider."""


@dataclass
class OutboundAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
    cid: str | None = None  # Content-ID for inline images referenced as cid:


@dataclass
class OutboundEmail:
    from_email: str
    from_name: str | None
    to: list[str]
    subject: str
    html: str
    text: str
    cc: list[str] = field(default_factory=list)
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    attachments: list[OutboundAttachment] = field(default_factory=list)

    @property
    def from_header(self) -> str:
        return formataddr((self.from_name or "", self.from_email))

    def threading_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.in_reply_to:
            headers["In-Reply-To"] = self.in_reply_to
        if self.references:
            headers["References"] = " ".join(self.references)
        return headers


class MailTransport(Protocol):
    """Send collaborator used by replies, forwards and the scheduled worker."""

    async def send(self, email: OutboundEmail) -> str:
        """Send the email and return its Message-ID."""
        ...


def _new_message_id(from_email: str) -> str:
    domain = from_email.rpartition("@")[2] or None
    return make_msgid(domain=domain)


class ResendMailTransport:
    """Send through the Resend HTTP API."""

    def __init__(self, api_key: str, *, timeout: float = 20.0):
        self.api_key = api_key
        self.timeout = timeout

    async def send(self, email: OutboundEmail) -> str:
        if not self.api_key:
            raise MailTransportError("Mail transport not configured (missing RESEND_API_KEY)")

        # Resend assigns its own id; the Message-ID header is what mail clients
        # thread on, so it is generated here and stored for later replies.
        message_id = _new_message_id(email.from_email)
        headers = {"Message-ID": message_id, **email.threading_headers()}

        payload: dict[str, object] = {
            "from": email.from_header,
            "to": email.to,
            "subject": email.subject,
            "html": email.html,
            "text": email.text,
            "headers": headers,
        }
        if email.cc:
            payload["cc"] = email.cc
        if email.attachments:
            payload["attachments"] = [
                {
                    "filename": attachment.filename,
                    "content": base64.b64encode(attachment.content).decode("ascii"),
                    **({"content_id": attachment.cid} if attachment.cid else {}),
                }
                for attachment in email.attachments
            ]

        request_headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:

                async def request_fn() -> httpx.Response:
                    return await client.post(RESEND_SEND_URL, headers=request_headers, json=payload)

                response = await request_with_retries(
                    request_fn,
                    max_attempts=RESEND_MAX_ATTEMPTS,
                    base_delay=RESEND_RETRY_BASE_DELAY,
                    max_delay=RESEND_RETRY_MAX_DELAY,
                    retry_statuses=DEFAULT_RETRY_STATUSES,
                    label="Resend send",
                )
        except httpx.RequestError as exc:
            raise MailTransportError(f"Resend request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            detail = None
            try:
                data = response.json()
                if isinstance(data, dict):
                    detail = data.get("message") or data.get("error")
            except ValueError:
                detail = None
            if detail:
                raise MailTransportError(f"Resend API error: {response.status_code} ({detail})")
            raise MailTransportError(f"Resend API error: {response.status_code}")

        logger.info("Email sent via Resend (to=%s, cc=%s)", len(email.to), len(email.cc))
        return message_id


class SmtpMailTransport:
    """Send through an SMTP relay (blocking smtplib run in a worker thread)."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        username: str = "",
        password: str = "",
        use_ssl: bool = False,
        timeout: float = 20.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout

    def build_message(self, email: OutboundEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = email.from_header
        msg["To"] = ", ".join(email.to)
        if email.cc:
            msg["Cc"] = ", ".join(email.cc)
        msg["Subject"] = email.subject
        msg["Message-ID"] = _new_message_id(email.from_email)
        for name, value in email.threading_headers().items():
            msg[name] = value

        msg.set_content(email.text)
        msg.add_alternative(email.html, subtype="html")

        html_part = msg.get_payload()[-1]
        for attachment in email.attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            if attachment.cid:
                html_part.add_related(
                    attachment.content,
                    maintype=maintype or "application",
                    subtype=subtype or "octet-stream",
                    cid=f"<{attachment.cid}>",
                    filename=attachment.filename,
                )
            else:
                msg.add_attachment(
                    attachment.content,
                    maintype=maintype or "application",
                    subtype=subtype or "octet-stream",
                    filename=attachment.filename,
                )
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        if self.use_ssl:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with server:
            server.ehlo()
            if not self.use_ssl and server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, email: OutboundEmail) -> str:
        try:
            msg = self.build_message(email)
        except ValueError as exc:
            # CR/LF in a header value
            raise MailTransportError(f"Invalid email: {exc}") from exc
        try:
            await anyio.to_thread.run_sync(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailTransportError(f"SMTP send failed: {exc}") from exc

        logger.info("Email sent via SMTP (to=%s, cc=%s)", len(email.to), len(email.cc))
        return msg["Message-ID"]


def get_mail_transport() -> MailTransport:
    """Build the transport selected by MAIL_TRANSPORT."""
    if settings.MAIL_TRANSPORT == "smtp":
        return SmtpMailTransport(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            use_ssl=settings.SMTP_SECURE,
            timeout=settings.MAIL_TIMEOUT_SECONDS,
        )
    return ResendMailTransport(settings.RESEND_API_KEY, timeout=settings.MAIL_TIMEOUT_SECONDS)
