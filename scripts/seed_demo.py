#!/usr/bin/env python3
"""Seed demo data: 5 sellers, one contract each, spread across the lifecycle.

Contracts sent to signature get their first reminder as a PENDING
notification; a worker pool started with WORKERS_ENABLED=true picks those
up on boot.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    DATABASE_URL=... python scripts/seed_demo.py
"""
from __future__ import annotations

import sys
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from contractflow.contracts.state_machine import ContractStateMachine
from contractflow.core.clock import utc_now
from contractflow.core.constants import ContractStatus
from contractflow.core.event_bus import EventBus
from contractflow.core.settings import get_settings
from contractflow.db.base import Base
from contractflow.db.models import Seller
from contractflow.notification.dispatcher import register_handlers
from contractflow.notification.queue import InMemoryDeliveryQueue


def seed(session: Session) -> None:
    """Insert demo sellers and contracts through the state machine."""
    bus = EventBus()
    register_handlers(bus, InMemoryDeliveryQueue())
    sm = ContractStateMachine(session, bus)
    now = utc_now()

    demo_sellers = [
        # (name, phone, email, target status)
        ("Ana Souza", "+5511999990001", "ana@example.com", ContractStatus.DRAFT),
        ("Bruno Lima", "+5511999990002", "bruno@example.com", ContractStatus.PENDING_SIGNATURE),
        ("Carla Mendes", "+5521999990003", "carla@example.com", ContractStatus.PENDING_SIGNATURE),
        ("Diego Rocha", "+5531999990004", None, ContractStatus.SIGNED),
        ("Elisa Prado", "+5541999990005", "elisa@example.com", ContractStatus.CANCELLED),
    ]

    for name, phone, email, target in demo_sellers:
        seller = Seller(id=uuid4(), name=name, phone=phone, email=email)
        session.add(seller)
        session.flush()

        contract = sm.create_contract(
            seller.id,
            template_id="partnership-v1",
            content=f"Partnership agreement for {name}",
            expires_at=now + timedelta(days=30),
        )
        if target == ContractStatus.DRAFT:
            continue
        if target == ContractStatus.CANCELLED:
            sm.cancel(contract.id, "Seller withdrew before signature")
            continue

        document_id = f"demo-doc-{uuid4().hex[:12]}"
        sm.send_to_signature(contract.id, document_id, f"https://sign.example.com/{document_id}")
        if target == ContractStatus.SIGNED:
            sm.change_status(contract.id, ContractStatus.SIGNED)

    session.commit()
    print(f"Seeded {len(demo_sellers)} sellers and {len(demo_sellers)} contracts.")


def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed(session)


if __name__ == "__main__":
    main()
