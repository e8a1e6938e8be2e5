"""In-process publish/subscribe for contract domain events.

The state machine publishes after it has written status and history; the
notification dispatcher subscribes.  Handlers run synchronously inside the
publisher's session so any rows they insert commit (or roll back) with the
transition that caused them.

A handler that raises a :class:`ContractFlowError` is logged and skipped;
infrastructure errors propagate to the caller.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from contractflow.core.errors import ContractFlowError

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Session], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: type) -> list[Handler]:
        return list(self._handlers.get(event_type, ()))

    def publish(self, event: Any, session: Session) -> None:
        handlers = self.handlers_for(type(event))
        if not handlers:
            logger.debug("No handlers for event=%s", type(event).__name__)
            return
        for handler in handlers:
            try:
                handler(event, session)
            except ContractFlowError as exc:
                logger.warning(
                    "Event handler %s declined event=%s: %s",
                    getattr(handler, "__qualname__", repr(handler)),
                    type(event).__name__,
                    exc,
                )
