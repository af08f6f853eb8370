"""Entry code -> attendance + QR ticket, once per code."""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .codegen import parse_embedded_code
from .errors import (
    CodeAlreadyUsed,
    ConstraintViolation,
    EventFull,
    NotFound,
    StoreError,
    ValidationError,
    classify_integrity_error,
)
from .guests import add_pending_guest
from .models import Code, Party, PriceTier, User
from .preview_cache import PreviewCache
from .qr import QRTicket, issue_ticket
from .storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    party: Party
    price: PriceTier
    code: Code
    qr: Optional[QRTicket]
    reassociated: bool = False

    def to_response(self) -> dict:
        party = self.party
        return {
            "success": True,
            "message": "Party added to your history successfully!",
            "party": {
                "id": party.id,
                "title": party.title,
                "location": party.location,
                "date": party.date,
                "administrator": party.administrator,
                "image": party.image,
                "tags": party.tags,
                "category": party.category,
                "attendees": party.attendees,
                "price_name": self.price.name,
                "price": self.price.amount,
            },
            "qr_code": self.qr.to_response() if self.qr else None,
        }


def used_code_count(db: Session, party_id: int) -> int:
    return db.scalar(
        select(func.count(Code.id)).where(Code.party_id == party_id, Code.already_used.is_(True))
    ) or 0


def ensure_capacity(db: Session, party: Party) -> None:
    if used_code_count(db, party.id) >= party.capacity:
        raise EventFull("Event is full")


def mark_code_used(db: Session, code_id: int, user_id: int | None) -> bool:
    """Flip unused -> used. False means the code was not unused any more."""
    result = db.execute(
        update(Code)
        .where(Code.id == code_id, Code.already_used.is_(False))
        .values(already_used=True, user_id=user_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def increment_attendees(db: Session, party_id: int) -> bool:
    """Add one attendee unless the party is at capacity."""
    result = db.execute(
        update(Party)
        .where(Party.id == party_id, Party.attendees_current < Party.capacity)
        .values(attendees_current=Party.attendees_current + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def _materialize_code(db: Session, cache: PreviewCache, code: str, user_id: int | None) -> Code:
    """Create the code row for a preview or embedded code seen for the first time."""
    entry = await cache.get(code)
    if entry is not None:
        party_id, price_id = entry.party_id, entry.price_id
    else:
        parsed = parse_embedded_code(code)
        if parsed is None:
            raise NotFound("Invalid code")
        party_id, price_id = parsed

    party = db.get(Party, party_id)
    if party is None:
        raise NotFound("Party not found")
    ensure_capacity(db, party)
    price = db.get(PriceTier, price_id)
    if price is None or price.party_id != party.id:
        raise NotFound("Price information not found")

    owner_id = user_id if user_id is not None and db.get(User, user_id) is not None else None
    row = Code(party_id=party.id, price_id=price.id, code=code, already_used=False, user_id=owner_id)
    try:
        db.add(row)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if classify_integrity_error(e) is not ConstraintViolation.UNIQUE:
            logger.error("code %s could not be stored: %s", code, e.orig)
            raise StoreError("Error saving code to database")
        # materialized by a concurrent request
        row = db.scalars(select(Code).where(Code.code == code)).one()
    logger.info("code materialized code=%s party_id=%s price_id=%s", code, party.id, price.id)
    return row


def _reassociate(db: Session, code_row: Code, user_id: int) -> Code:
    result = db.execute(
        update(Code)
        .where(Code.id == code_row.id, Code.already_used.is_(True), Code.user_id.is_(None))
        .values(user_id=user_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise CodeAlreadyUsed("Code has already been used")
    db.commit()
    db.refresh(code_row)
    logger.info("used code re-associated code_id=%s user_id=%s", code_row.id, user_id)
    return code_row


def _record_pending_guest(db: Session, party: Party, user: User | None) -> None:
    try:
        add_pending_guest(db, party.id, user.name if user else "Guest", user.email if user else None)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("could not add pending guest for party_id=%s: %s", party.id, e)


def _issue_ticket_quietly(db: Session, blob_store: BlobStore | None, party: Party, code_row: Code,
                          user: User | None) -> Optional[QRTicket]:
    try:
        return issue_ticket(
            db,
            blob_store,
            party=party,
            code_id=code_row.id,
            user_id=user.id if user else None,
            guest_name=user.name if user else None,
        )
    except Exception:
        # the entry stands even without a ticket
        db.rollback()
        logger.exception("QR issuance failed for code_id=%s", code_row.id)
        return None


async def verify_and_add(db: Session, cache: PreviewCache, blob_store: BlobStore | None,
                         code: str | None, user_id: int | None = None) -> RedemptionResult:
    code = str(code or "").strip()
    if not code:
        raise ValidationError("Code is required")

    code_row = db.scalars(select(Code).where(Code.code == code)).first()
    if code_row is None:
        code_row = await _materialize_code(db, cache, code, user_id)

    user = None
    reassociated = False
    if code_row.already_used:
        if user_id is None or code_row.user_id is not None or not config.ALLOW_CODE_REASSOCIATION:
            raise CodeAlreadyUsed("Code has already been used")
        user = _require_user(db, user_id)
        code_row = _reassociate(db, code_row, user_id)
        reassociated = True

    party = db.get(Party, code_row.party_id)
    if party is None:
        raise NotFound("Party not found")
    price = db.get(PriceTier, code_row.price_id)
    if price is None:
        raise NotFound("Price information not found")

    if not reassociated:
        if user_id is not None:
            user = _require_user(db, user_id)

        ensure_capacity(db, party)
        if not mark_code_used(db, code_row.id, user_id):
            db.rollback()
            logger.info("lost redemption race code=%s", code)
            raise CodeAlreadyUsed("Code has already been used")
        if not increment_attendees(db, party.id):
            db.rollback()
            raise EventFull("Event is full")
        db.commit()
        await cache.delete(code)

        db.refresh(code_row)
        db.refresh(party)
        logger.info("code redeemed code=%s party_id=%s user_id=%s attendees=%s",
                    code, party.id, user_id, party.attendees)

    _record_pending_guest(db, party, user)
    ticket = _issue_ticket_quietly(db, blob_store, party, code_row, user)
    return RedemptionResult(party=party, price=price, code=code_row, qr=ticket, reassociated=reassociated)
