"""Message templates keyed by ``(channel, type, attempt)``.

Templates use ``string.Template`` placeholders: ``$seller_name``,
``$signing_url`` and ``$contract_id``.  An entry with ``attempt=None`` is
the fallback for every attempt number of that channel and type.
"""
from __future__ import annotations

from string import Template
from typing import NamedTuple

from contractflow.core.constants import NotificationChannel, NotificationType
from contractflow.core.errors import ValidationError


class TemplateKey(NamedTuple):
    channel: str
    type: str
    attempt: int | None = None


_W = NotificationChannel.WHATSAPP.value
_E = NotificationChannel.EMAIL.value
_S = NotificationChannel.SMS.value
_REMINDER = NotificationType.SIGNATURE_REMINDER.value

# ---------------------------------------------------------------------------
# Template table
# ---------------------------------------------------------------------------

TEMPLATES: dict[TemplateKey, str] = {
    TemplateKey(_W, _REMINDER, 1): (
        "Hello $seller_name! Your partnership contract is ready for signature. "
        "You can review and sign it here: $signing_url"
    ),
    TemplateKey(_W, _REMINDER, 2): (
        "Hi $seller_name, a friendly reminder that your contract is still waiting "
        "for your signature. It only takes a minute: $signing_url"
    ),
    TemplateKey(_W, _REMINDER, 3): (
        "$seller_name, this is our last reminder: your contract has not been signed yet. "
        "Please sign it to keep your registration active: $signing_url"
    ),
    TemplateKey(_W, NotificationType.CONTRACT_SIGNED.value): (
        "Thank you, $seller_name! We received your signed contract."
    ),
    TemplateKey(_W, NotificationType.CONTRACT_EXPIRED.value): (
        "Hello $seller_name, the signature period for your contract has ended. "
        "Reply to this message if you would like a new one."
    ),
    TemplateKey(_W, NotificationType.CONTRACT_CANCELLED.value): (
        "Hello $seller_name, your contract $contract_id has been cancelled."
    ),
    TemplateKey(_E, _REMINDER): (
        "Dear $seller_name,\n\n"
        "Your contract $contract_id is awaiting your signature.\n"
        "Sign it here: $signing_url\n"
    ),
    TemplateKey(_S, _REMINDER): "$seller_name, your contract awaits signature: $signing_url",
}


def lookup(channel: NotificationChannel | str, type_: NotificationType | str, attempt: int) -> str:
    channel = NotificationChannel(channel).value
    type_ = NotificationType(type_).value
    template = TEMPLATES.get(TemplateKey(channel, type_, attempt)) or TEMPLATES.get(
        TemplateKey(channel, type_)
    )
    if template is None:
        raise ValidationError(f"No template for channel={channel} type={type_} attempt={attempt}")
    return template


def render(
    channel: NotificationChannel | str,
    type_: NotificationType | str,
    attempt: int,
    context: dict[str, str],
) -> str:
    return Template(lookup(channel, type_, attempt)).safe_substitute(context)
