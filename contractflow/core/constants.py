"""Canonical status, reason and notification vocabularies.

Values are stored verbatim in ``String`` columns, so members always compare
equal to their persisted string (``ContractStatus.SIGNED == "SIGNED"``).
"""
from __future__ import annotations

from enum import Enum


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    SIGNED = "SIGNED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class StatusReason(str, Enum):
    CREATED = "CREATED"
    SENT_TO_SIGNATURE = "SENT_TO_SIGNATURE"
    SIGNED = "SIGNED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    MANUAL_CANCELLATION = "MANUAL_CANCELLATION"


class NotificationType(str, Enum):
    SIGNATURE_REMINDER = "SIGNATURE_REMINDER"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"
    CONTRACT_EXPIRED = "CONTRACT_EXPIRED"
    CONTRACT_CANCELLED = "CONTRACT_CANCELLED"


class NotificationChannel(str, Enum):
    WHATSAPP = "WHATSAPP"
    EMAIL = "EMAIL"
    SMS = "SMS"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


TERMINAL_CONTRACT_STATUSES: frozenset[str] = frozenset({
    ContractStatus.SIGNED.value,
    ContractStatus.EXPIRED.value,
    ContractStatus.CANCELLED.value,
})

MIN_ATTEMPT_NUMBER = 1
MAX_ATTEMPT_NUMBER = 3

PAUSE_SETTING_KEY = "notification_pause_until"
SUPERSEDED_ERROR = "superseded"
