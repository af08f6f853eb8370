import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .errors import AlreadyScanned, NotFound, ValidationError, WrongParty
from .models import QR_NOT_USED, QR_USED, QRRecord
from .qr import ParsedToken, parse_qr_token

logger = logging.getLogger(__name__)

Resolver = Callable[[Session, str, Optional[ParsedToken]], Optional[QRRecord]]


def by_token(db: Session, raw: str, parsed: Optional[ParsedToken]) -> Optional[QRRecord]:
    return db.scalars(select(QRRecord).where(QRRecord.qr_token == raw)).first()


def by_legacy_token(db: Session, raw: str, parsed: Optional[ParsedToken]) -> Optional[QRRecord]:
    return db.scalars(select(QRRecord).where(QRRecord.legacy_token == raw).order_by(QRRecord.id)).first()


def by_code_id(db: Session, raw: str, parsed: Optional[ParsedToken]) -> Optional[QRRecord]:
    if parsed is None or parsed.code_id is None:
        return None
    return db.scalars(select(QRRecord).where(QRRecord.code_id == parsed.code_id).order_by(QRRecord.id)).first()


def by_owner_and_party(db: Session, raw: str, parsed: Optional[ParsedToken]) -> Optional[QRRecord]:
    if parsed is None:
        return None
    owner = QRRecord.user_id.is_(None)
    if parsed.owner_id is not None:
        owner = or_(QRRecord.user_id == parsed.owner_id, owner)
    return db.scalars(
        select(QRRecord).where(QRRecord.party_id == parsed.party_id, owner).order_by(QRRecord.id)
    ).first()


# first hit wins
RESOLVERS: tuple[Resolver, ...] = (by_token, by_legacy_token, by_code_id, by_owner_and_party)


def resolve_qr_record(db: Session, raw: str) -> Optional[QRRecord]:
    parsed = parse_qr_token(raw)
    for resolver in RESOLVERS:
        record = resolver(db, raw, parsed)
        if record is not None:
            return record
    return None


def scan_qr_code(db: Session, raw: str | None, expected_party_id: int | None = None) -> QRRecord:
    raw = str(raw or "").strip()
    if not raw:
        raise ValidationError("QR code data is required")

    record = resolve_qr_record(db, raw)
    if record is None:
        raise NotFound("Invalid QR code")

    if expected_party_id is not None and record.party_id != int(expected_party_id):
        raise WrongParty("QR code belongs to a different party")

    if record.status == QR_USED:
        raise AlreadyScanned("QR code has already been scanned")

    result = db.execute(
        update(QRRecord)
        .where(QRRecord.id == record.id, QRRecord.status == QR_NOT_USED)
        .values(status=QR_USED, used_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.info("lost scan race qr_id=%s", record.id)
        raise AlreadyScanned("QR code has already been scanned")
    db.commit()
    db.refresh(record)
    logger.info("QR scanned qr_id=%s party_id=%s", record.id, record.party_id)
    return record


def scan_response(record: QRRecord) -> dict:
    payload = record.to_dict()
    payload.update({
        "user_id": record.user_id,
        "party_id": record.party_id,
        "code_id": record.code_id,
        "user_name": record.user.name if record.user else None,
        "party_title": record.party.title if record.party else None,
    })
    return payload
