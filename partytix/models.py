from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import config
from .db import Base

QR_NOT_USED = "not used"
QR_USED = "used"


def parse_attendees(value: str | None) -> tuple[int, int]:
    """Split a ``"current/max"`` string; missing or bad parts give 0 and the default capacity."""
    parts = str(value or "").split("/")
    try:
        current = int(parts[0])
    except ValueError:
        current = 0
    try:
        maximum = int(parts[1]) if len(parts) > 1 else config.DEFAULT_CAPACITY
    except ValueError:
        maximum = config.DEFAULT_CAPACITY
    return current, maximum or config.DEFAULT_CAPACITY


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_guest: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Party(Base):
    __tablename__ = "parties"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, index=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    # free text, "5/9/21 • 23:00-06:00" or ISO
    date: Mapped[str | None] = mapped_column(String, nullable=True)
    administrator: Mapped[str | None] = mapped_column(String, nullable=True)
    image: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    attendees_current: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, default=config.DEFAULT_CAPACITY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    prices: Mapped[list["PriceTier"]] = relationship(back_populates="party")

    @property
    def attendees(self) -> str:
        current = self.attendees_current or 0
        capacity = self.capacity or config.DEFAULT_CAPACITY
        return f"{current}/{capacity}"

    @attendees.setter
    def attendees(self, value: str) -> None:
        self.attendees_current, self.capacity = parse_attendees(value)


class PriceTier(Base):
    __tablename__ = "prices"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    amount: Mapped[float] = mapped_column(Float, default=0)

    party: Mapped[Party] = relationship(back_populates="prices")

    __table_args__ = (UniqueConstraint("party_id", "name", name="uniq_party_price_name"),)


class Code(Base):
    __tablename__ = "codes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), index=True)
    price_id: Mapped[int] = mapped_column(ForeignKey("prices.id"), index=True)
    code: Mapped[str] = mapped_column(String, unique=True)
    already_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), index=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "party_id": self.party_id,
            "price_id": self.price_id,
            "code": self.code,
            "already_used": self.already_used,
            "user_id": self.user_id,
            "created_at": str(self.created_at) if self.created_at else None,
        }


class QRRecord(Base):
    __tablename__ = "qr_codes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), index=True, nullable=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), index=True)
    code_id: Mapped[int | None] = mapped_column(ForeignKey("codes.id"), index=True, nullable=True)
    qr_token: Mapped[str] = mapped_column(String, unique=True)
    # scanners printed before qr_token existed carry this value instead
    legacy_token: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    qr_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=QR_NOT_USED, nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped[User | None] = relationship()
    party: Mapped[Party] = relationship()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "qr_token": self.qr_token,
            "qr_image": self.qr_image,
            "status": self.status,
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "created_at": str(self.created_at) if self.created_at else None,
        }


class GuestEntry(Base):
    __tablename__ = "guest_list"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # None = pending, True = validated, False = denied
    validated: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ScanAudit(Base):
    __tablename__ = "scan_audit"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String, index=True)
    raw_value: Mapped[str] = mapped_column(String)
    party_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    qr_record_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    ip: Mapped[str] = mapped_column(String)
    user_agent: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
