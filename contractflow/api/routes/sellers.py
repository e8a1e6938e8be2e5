"""Seller registration routes."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from contractflow.api.deps import get_db
from contractflow.core.errors import NotFound
from contractflow.db.repositories import SellerRepository

router = APIRouter(prefix="/sellers", tags=["sellers"])


class CreateSellerBody(BaseModel):
    name: str = Field(min_length=1)
    phone: str | None = None
    email: str | None = None


def _serialize_seller(seller):
    return {
        "id": str(seller.id),
        "name": seller.name,
        "phone": seller.phone,
        "email": seller.email,
        "created_at": seller.created_at.isoformat() if seller.created_at else None,
    }


@router.post("", status_code=status.HTTP_201_CREATED, summary="Register a seller")
def create_seller(body: CreateSellerBody, db: Session = Depends(get_db)):
    seller = SellerRepository(db).create(name=body.name, phone=body.phone, email=body.email)
    return _serialize_seller(seller)


@router.get("/{seller_id}", summary="Get a seller")
def get_seller(seller_id: UUID, db: Session = Depends(get_db)):
    seller = SellerRepository(db).get(seller_id)
    if seller is None:
        raise NotFound(f"Seller {seller_id} not found")
    return _serialize_seller(seller)
