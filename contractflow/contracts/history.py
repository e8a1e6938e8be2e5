"""Append-only contract status history.

Provides ``record_transition()`` to persist ``StatusHistory`` rows.  Rows are
never updated or deleted.

Safety: metadata may carry free text from the signature provider (rejection
reasons), so only ids and statuses are logged.
"""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from contractflow.core.constants import StatusReason
from contractflow.db.models import StatusHistory
from contractflow.db.repositories import StatusHistoryRepository

logger = logging.getLogger(__name__)

VALID_REASONS: frozenset[str] = frozenset(reason.value for reason in StatusReason)


def record_transition(
    db_session: Session,
    contract_id: UUID,
    from_status: str,
    to_status: str,
    reason: str,
    metadata: dict | None = None,
) -> StatusHistory:
    """Add a ``StatusHistory`` row to the session.

    Does **not** flush or commit; the state machine flushes it together with
    the status update so both land in the same statement batch.
    """
    if reason not in VALID_REASONS:
        raise ValueError(f"Invalid reason {reason!r}; must be one of {sorted(VALID_REASONS)}")

    entry = StatusHistory(
        contract_id=contract_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        metadata_json=dict(metadata) if metadata else None,
    )
    db_session.add(entry)

    logger.info(
        "Status history recorded: contract=%s %s -> %s reason=%s",
        contract_id,
        from_status,
        to_status,
        reason,
    )
    return entry


def get_contract_history(db_session: Session, contract_id: UUID) -> list[StatusHistory]:
    """Return all ``StatusHistory`` rows for *contract_id*, oldest first."""
    return StatusHistoryRepository(db_session).list_for_contract(contract_id)
