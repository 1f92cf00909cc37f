"""Compose outbound reply emails: body rendering, quoting and threading headers."""

from __future__ import annotations

import html as html_module
import re
from typing import Sequence

from app.core.config import settings
from app.db.models import Message, Ticket
from app.services.mail_transport import OutboundAttachment, OutboundEmail

FORWARD_SEPARATOR = "---------- Forwarded message ----------"
MAX_QUOTED_MESSAGES = 5

_QUOTE_STYLE = "border-left: 3px solid #ccc; padding-left: 10px; margin: 10px 0; color: #666;"
_BLOCK_BREAK = re.compile(r"<br\s*/?>|</p>|</div>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")


# =============================================================================
# Text helpers
# =============================================================================

def html_to_text(content: str) -> str:
    """Plain-text rendition of editor HTML (line breaks kept, tags dropped)."""
    text = _BLOCK_BREAK.sub("\n", content)
    text = _TAG.sub("", text)
    text = text.replace("&nbsp;", " ")
    return html_module.unescape(text).strip()


def strip_html(content: str | None) -> str | None:
    """Collapse HTML into a single searchable line."""
    if not content:
        return None
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = _TAG.sub(" ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return html_module.unescape(text)


def _plain_fallback(content: str) -> str:
    return re.sub(r"\n\n+", "\n\n", _TAG.sub("", content))


def _message_html(message: Message) -> str:
    if message.body_html:
        return message.body_html
    return html_module.escape(message.body or "").replace("\n", "<br>")


def format_quote_date(message: Message) -> str:
    """e.g. 'Mar 4, 2025, 09:15 AM'."""
    created = message.created_at
    return f"{created:%b} {created.day}, {created:%Y, %I:%M %p}"


# =============================================================================
# Threading headers
# =============================================================================

def build_references(ticket: Ticket, previous: Sequence[Message]) -> list[str]:
    """
    References chain for a reply.

    Starts from the References of the most recent customer-originated
    message, appends the most recent message's id, falls back to the
    ticket root plus every known prior id, and de-duplicates in order.
    """
    if not previous:
        return [ticket.message_id] if ticket.message_id else []

    customer_addresses = {ticket.customer_email, ticket.reply_to_email} - {None}
    incoming = next((m for m in previous if m.sender_email in customer_addresses), None)

    references: list[str] = []
    if incoming is not None and isinstance(incoming.email_metadata, dict):
        chain = incoming.email_metadata.get("references")
        if isinstance(chain, list):
            references = [ref for ref in chain if isinstance(ref, str) and ref]

    latest_id = previous[0].message_id
    if latest_id and latest_id not in references:
        references.append(latest_id)

    if not references:
        known_ids = [m.message_id for m in previous if m.message_id]
        if ticket.message_id and ticket.message_id not in known_ids:
            references = [ticket.message_id, *known_ids]
        else:
            references = known_ids

    return list(dict.fromkeys(references))


def build_in_reply_to(ticket: Ticket, previous: Sequence[Message]) -> str | None:
    if previous and previous[0].message_id:
        return previous[0].message_id
    return ticket.message_id


# =============================================================================
# Body rendering
# =============================================================================

def tracking_pixel(token: str) -> str:
    url = f"{settings.tracking_base_url}/api/track/{token}"
    return f'<img src="{url}" alt="" width="1" height="1" style="display:none;" />'


def render_quote_block(message: Message) -> str:
    sender = html_module.escape(message.sender_name or message.sender_email)
    return (
        f'<br><div style="color: #666; font-size: 0.9em;">'
        f"On {format_quote_date(message)}, {sender} wrote:</div>"
        f'<blockquote style="{_QUOTE_STYLE}">{_message_html(message)}</blockquote>'
    )


def render_reply_html(
    body_html: str,
    *,
    signature: str | None = None,
    tracking_token: str | None = None,
    previous: Sequence[Message] = (),
) -> str:
    """Reply body + signature + tracking pixel + quoted history (newest first)."""
    rendered = body_html
    if signature:
        rendered = f"{rendered}<br>{signature}"
    if tracking_token:
        rendered = f"{rendered}{tracking_pixel(tracking_token)}"
    if previous:
        rendered += '<br><br><hr style="border: none; border-top: 1px solid #ccc; margin: 20px 0;">'
        for message in previous:
            rendered += render_quote_block(message)
    return rendered


def render_forward(message: Message, comments: str | None) -> tuple[str, str]:
    """Return (html, text) for forwarding `message` with optional comments."""
    html_body = ""
    text_body = ""
    if comments and comments.strip():
        html_body = f"<p>{html_module.escape(comments).replace(chr(10), '<br>')}</p><br><br>"
        text_body = f"{comments}\n\n"
    html_body += (
        f"<p><em>{FORWARD_SEPARATOR}</em></p>"
        f'<blockquote style="{_QUOTE_STYLE}">{_message_html(message)}</blockquote>'
    )
    text_body += f"{FORWARD_SEPARATOR}\n{message.body}"
    return html_body, text_body


# =============================================================================
# Composition
# =============================================================================

def reply_recipients(ticket: Ticket, to_emails: Sequence[str] | None) -> list[str]:
    if to_emails:
        return list(to_emails)
    return [ticket.reply_to_email or ticket.customer_email]


def build_reply_email(
    ticket: Ticket,
    body_html: str,
    *,
    from_email: str,
    from_name: str | None,
    is_first_message: bool,
    to_emails: Sequence[str] | None = None,
    cc_emails: Sequence[str] | None = None,
    signature: str | None = None,
    tracking_token: str | None = None,
    previous: Sequence[Message] = (),
    attachments: Sequence[OutboundAttachment] = (),
) -> OutboundEmail:
    rendered = render_reply_html(
        body_html,
        signature=signature,
        tracking_token=tracking_token,
        previous=previous,
    )
    return OutboundEmail(
        from_email=from_email,
        from_name=from_name,
        to=reply_recipients(ticket, to_emails),
        cc=list(cc_emails or []),
        subject=ticket.subject if is_first_message else f"Re: {ticket.subject}",
        html=rendered,
        text=_plain_fallback(rendered),
        in_reply_to=build_in_reply_to(ticket, previous),
        references=build_references(ticket, previous),
        attachments=list(attachments),
    )


def build_new_email(
    to_email: str,
    subject: str,
    body_html: str,
    *,
    from_email: str,
    from_name: str | None,
) -> OutboundEmail:
    """A fresh (non-reply) email, used for forwards."""
    return OutboundEmail(
        from_email=from_email,
        from_name=from_name,
        to=[to_email],
        subject=subject,
        html=body_html,
        text=_plain_fallback(body_html),
    )
