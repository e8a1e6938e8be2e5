from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from contractflow.core.constants import ContractStatus, NotificationStatus, NotificationType
from contractflow.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity


class SellerRepository(BaseRepository[models.Seller]):
    model = models.Seller


class ContractRepository(BaseRepository[models.Contract]):
    model = models.Contract

    def get_for_update(self, contract_id: UUID) -> models.Contract | None:
        """Load the contract holding a row lock (no-op on SQLite)."""
        stmt = select(models.Contract).where(models.Contract.id == contract_id).with_for_update()
        return self.db.execute(stmt).scalars().first()

    def get_by_external_id(self, external_id: str) -> models.Contract | None:
        stmt = select(models.Contract).where(models.Contract.external_id == external_id)
        return self.db.execute(stmt).scalars().first()

    def list_by_status(self, status: ContractStatus) -> list[models.Contract]:
        stmt = (
            select(models.Contract)
            .where(models.Contract.status == status.value)
            .order_by(models.Contract.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_overdue(self, now: datetime) -> list[models.Contract]:
        stmt = (
            select(models.Contract)
            .where(
                models.Contract.status == ContractStatus.PENDING_SIGNATURE.value,
                models.Contract.expires_at.is_not(None),
                models.Contract.expires_at < now,
            )
            .order_by(models.Contract.expires_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class StatusHistoryRepository(BaseRepository[models.StatusHistory]):
    model = models.StatusHistory

    def list_for_contract(self, contract_id: UUID) -> list[models.StatusHistory]:
        stmt = (
            select(models.StatusHistory)
            .where(models.StatusHistory.contract_id == contract_id)
            .order_by(models.StatusHistory.created_at.asc(), models.StatusHistory.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class NotificationRepository(BaseRepository[models.Notification]):
    model = models.Notification

    def list_for_contract(self, contract_id: UUID) -> list[models.Notification]:
        stmt = (
            select(models.Notification)
            .where(models.Notification.contract_id == contract_id)
            .order_by(models.Notification.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_pending_for_contract(self, contract_id: UUID) -> models.Notification | None:
        stmt = (
            select(models.Notification)
            .where(
                models.Notification.contract_id == contract_id,
                models.Notification.status == NotificationStatus.PENDING.value,
            )
            .order_by(models.Notification.created_at.asc())
        )
        return self.db.execute(stmt).scalars().first()

    def has_earlier_pending(self, notification: models.Notification) -> bool:
        stmt = select(func.count()).select_from(models.Notification).where(
            models.Notification.contract_id == notification.contract_id,
            models.Notification.status == NotificationStatus.PENDING.value,
            models.Notification.id != notification.id,
            models.Notification.created_at < notification.created_at,
        )
        return bool(self.db.execute(stmt).scalar_one())

    def count_for_contract(self, contract_id: UUID, type_: NotificationType | None = None) -> int:
        stmt = select(func.count()).select_from(models.Notification).where(
            models.Notification.contract_id == contract_id
        )
        if type_ is not None:
            stmt = stmt.where(models.Notification.type == type_.value)
        return int(self.db.execute(stmt).scalar_one())

    def max_attempt_for_contract(self, contract_id: UUID) -> int:
        stmt = select(func.max(models.Notification.attempt_number)).where(
            models.Notification.contract_id == contract_id
        )
        return int(self.db.execute(stmt).scalar_one() or 0)

    def list_by_status(self, status: NotificationStatus) -> list[models.Notification]:
        stmt = (
            select(models.Notification)
            .where(models.Notification.status == status.value)
            .order_by(models.Notification.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class SystemSettingRepository(BaseRepository[models.SystemSetting]):
    model = models.SystemSetting

    def get_value(self, key: str) -> str | None:
        entity = self.get(key)
        return entity.value if entity is not None else None

    def upsert(self, key: str, value: str, description: str | None = None) -> models.SystemSetting:
        entity = self.get(key)
        if entity is None:
            return self.create(key=key, value=value, description=description)
        changes: dict = {"value": value}
        if description is not None:
            changes["description"] = description
        return self.update(entity, **changes)
