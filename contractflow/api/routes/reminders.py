"""On-demand reminder triggers."""
from __future__ import annotations

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends

from contractflow.api.deps import get_reminder_scheduler
from contractflow.reminders.scheduler import ReminderScheduler

router = APIRouter(prefix="/reminders", tags=["reminders"])


@router.post("/run", summary="Evaluate every pending contract now")
def run_reminders(scheduler: ReminderScheduler = Depends(get_reminder_scheduler)):
    return asdict(scheduler.run(scheduled=False))


@router.post("/{contract_id}", summary="Send the next reminder for one contract")
def remind_contract(contract_id: UUID, scheduler: ReminderScheduler = Depends(get_reminder_scheduler)):
    return {"contract_id": str(contract_id), "created": scheduler.process_contract(contract_id)}
