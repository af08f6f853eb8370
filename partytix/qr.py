import base64
import io
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import qrcode
from azure.core.exceptions import AzureError
from PIL import Image
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .errors import ConstraintViolation, NotFound, StoreError, classify_integrity_error
from .models import QR_NOT_USED, Code, Party, QRRecord, User
from .storage import BlobStore, BucketNotFound, upload_with_container_fallback

logger = logging.getLogger(__name__)


@dataclass
class QRTicket:
    token: str
    image_url: str
    record: Optional[QRRecord] = None
    reused: bool = False

    def to_response(self) -> dict:
        return {"token": self.token, "image_url": self.image_url}


@dataclass
class ParsedToken:
    owner: str
    party_id: int
    code_id: Optional[int]

    @property
    def owner_id(self) -> Optional[int]:
        return int(self.owner) if self.owner.isdigit() else None


def _slug(name: str | None) -> str:
    return re.sub(r"\s+", "-", (name or "").strip())


def owner_tag(owner_id: int | None, guest_name: str | None = None) -> str:
    if owner_id is not None:
        return str(owner_id)
    return f"GUEST-{_slug(guest_name) or 'ANON'}"


def make_qr_token(tag: str, party_id: int, code_id: int | None, timestamp_ms: int) -> str:
    random_part = secrets.token_hex(8).upper()
    return f"QR-{tag}-{party_id}-{code_id or 0}-{timestamp_ms}-{random_part}"


def parse_qr_token(raw: str) -> Optional[ParsedToken]:
    """Read ``QR-<owner>-<party>-<code>-<ts>-<rand>``; the owner tag may itself contain dashes."""
    parts = str(raw).split("-")
    if len(parts) < 6 or parts[0] != "QR":
        return None
    party, code = parts[-4], parts[-3]
    if not party.isdigit() or not code.isdigit():
        return None
    return ParsedToken(owner="-".join(parts[1:-4]), party_id=int(party), code_id=int(code) or None)


def render_qr_png(data: str, width: int | None = None) -> bytes:
    width = width or config.QR_IMAGE_WIDTH
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=1)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").get_image()
    img = img.convert("RGB").resize((width, width), Image.Resampling.NEAREST)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def to_data_uri(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def ticket_valid_until(party_date: str | None, now: datetime | None = None) -> datetime:
    """End of the party day for ``"D/M/Y • ..."`` dates, the instant itself for ISO ones."""
    now = now or datetime.now(timezone.utc)
    fallback = now + timedelta(days=config.TICKET_FALLBACK_VALIDITY_DAYS)
    if not party_date:
        return fallback

    date_part = str(party_date).split("•")[0].strip()
    try:
        if "/" in date_part:
            day, month, year = (int(p) for p in date_part.split("/"))
            if year < 100:
                year += 2000
            return datetime(year, month, day, 23, 59, 59, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(date_part.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("unparseable party date %r, ticket valid for %d days",
                       party_date, config.TICKET_FALLBACK_VALIDITY_DAYS)
        return fallback
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def store_qr_image(blob_store: BlobStore | None, png: bytes, party_id: int, code_id: int | None,
                   timestamp_ms: int) -> str:
    if blob_store is None:
        return to_data_uri(png)

    path = f"qr_{party_id}_{code_id or 0}_{timestamp_ms}.png"
    try:
        return upload_with_container_fallback(blob_store, config.QR_CONTAINER_NAME, path, png)
    except (AzureError, BucketNotFound, OSError) as e:
        logger.warning("QR image upload failed, using inline data URI: %s", e)
        return to_data_uri(png)


def resolve_owner(db: Session, user_id: int | None, guest_name: str | None) -> int | None:
    if user_id is not None:
        return user_id
    if guest_name:
        user = db.scalars(select(User).where(User.name == guest_name).order_by(User.id)).first()
        if user is not None:
            return user.id
    return None


def find_existing_ticket(db: Session, owner_id: int | None, party_id: int,
                         code_id: int | None) -> Optional[QRRecord]:
    stmt = select(QRRecord).where(QRRecord.party_id == party_id)
    if owner_id is not None:
        stmt = stmt.where(QRRecord.user_id == owner_id)
        if code_id is not None:
            stmt = stmt.where(or_(QRRecord.code_id == code_id, QRRecord.code_id.is_(None)))
    else:
        # anonymous tickets may have been stored under a provisioned guest user
        guest_ids = select(User.id).where(User.is_guest.is_(True))
        stmt = stmt.where(or_(QRRecord.user_id.is_(None), QRRecord.user_id.in_(guest_ids)))
        if code_id is not None:
            stmt = stmt.where(QRRecord.code_id == code_id)
        else:
            stmt = stmt.where(QRRecord.user_id.is_(None))
    return db.scalars(stmt.order_by(QRRecord.id)).first()


def guest_email(guest_name: str | None, party_id: int) -> str:
    slug = _slug(guest_name).lower() or "anon"
    return f"guest-{slug}-{party_id}@{config.GUEST_EMAIL_DOMAIN}"


def provision_guest_user(db: Session, guest_name: str | None, party_id: int) -> User:
    email = guest_email(guest_name, party_id)
    user = db.scalars(select(User).where(User.email == email)).first()
    if user is not None:
        return user

    user = User(name=guest_name or "Guest", email=email, is_admin=False, is_guest=True)
    try:
        db.add(user)
        db.commit()
    except IntegrityError:
        # provisioned concurrently
        db.rollback()
        user = db.scalars(select(User).where(User.email == email)).one()
    logger.info("guest user provisioned id=%s email=%s", user.id, email)
    return user


def _insert_record(db: Session, values: dict) -> QRRecord:
    record = QRRecord(**values)
    db.add(record)
    db.commit()
    return record


def _drop_code_reference(db: Session, values: dict, guest_name: str | None) -> Optional[dict]:
    if values.get("code_id") is None:
        return None
    logger.warning("code %s rejected by qr_codes, storing ticket without it", values["code_id"])
    return {**values, "code_id": None}


def _provision_owner(db: Session, values: dict, guest_name: str | None) -> Optional[dict]:
    if values.get("user_id") is not None:
        return None
    guest = provision_guest_user(db, guest_name, values["party_id"])
    return {**values, "user_id": guest.id}


_FALLBACKS = {
    ConstraintViolation.FOREIGN_KEY: _drop_code_reference,
    ConstraintViolation.NOT_NULL: _provision_owner,
}


def persist_qr_record(db: Session, values: dict, guest_name: str | None = None) -> Optional[QRRecord]:
    """Insert, then walk the fallbacks once each on the constraint that rejected the row."""
    applied: set[ConstraintViolation] = set()
    while True:
        try:
            return _insert_record(db, values)
        except IntegrityError as e:
            db.rollback()
            violation = classify_integrity_error(e)
            fallback = _FALLBACKS.get(violation)
            retry = None
            if fallback is not None and violation not in applied:
                retry = fallback(db, values, guest_name)
            if retry is None:
                logger.warning("QR record not saved (%s): %s", violation.value, e.orig)
                return None
            applied.add(violation)
            values = retry


def issue_ticket(db: Session, blob_store: BlobStore | None, *, party: Party, code_id: int | None,
                 user_id: int | None = None, guest_name: str | None = None,
                 now: datetime | None = None) -> QRTicket:
    owner_id = resolve_owner(db, user_id, guest_name)

    existing = find_existing_ticket(db, owner_id, party.id, code_id)
    if existing is not None:
        logger.info("reusing QR ticket id=%s party_id=%s", existing.id, party.id)
        image = existing.qr_image or to_data_uri(render_qr_png(existing.qr_token))
        return QRTicket(token=existing.qr_token, image_url=image, record=existing, reused=True)

    now = now or datetime.now(timezone.utc)
    timestamp_ms = int(now.timestamp() * 1000)
    token = make_qr_token(owner_tag(owner_id, guest_name), party.id, code_id, timestamp_ms)
    png = render_qr_png(token)
    image_url = store_qr_image(blob_store, png, party.id, code_id, timestamp_ms)

    record = persist_qr_record(db, {
        "user_id": owner_id,
        "party_id": party.id,
        "code_id": code_id,
        "qr_token": token,
        "qr_image": image_url,
        "status": QR_NOT_USED,
        "valid_until": ticket_valid_until(party.date, now),
        "used_at": None,
    }, guest_name)

    if record is None:
        logger.warning("QR ticket for party_id=%s returned without a stored record", party.id)
    else:
        logger.info("QR ticket issued id=%s party_id=%s owner=%s", record.id, party.id, owner_id)
    return QRTicket(token=token, image_url=image_url, record=record)


def get_ticket_for_user(db: Session, blob_store: BlobStore | None, user_id: int, party_id: int) -> dict:
    record = db.scalars(
        select(QRRecord).where(QRRecord.user_id == user_id, QRRecord.party_id == party_id).order_by(QRRecord.id)
    ).first()

    if record is None:
        used_code = db.scalars(
            select(Code).where(
                Code.user_id == user_id,
                Code.party_id == party_id,
                Code.already_used.is_(True),
            ).order_by(Code.id)
        ).first()
        if used_code is None:
            raise NotFound("QR code not found")

        record = db.scalars(select(QRRecord).where(QRRecord.code_id == used_code.id)).first()
        if record is None:
            party = db.get(Party, party_id)
            if party is None:
                raise NotFound("QR code not found")
            logger.info("issuing QR on demand user_id=%s party_id=%s", user_id, party_id)
            ticket = issue_ticket(db, blob_store, party=party, code_id=used_code.id, user_id=user_id)
            if ticket.record is None:
                raise StoreError("Error generating QR code")
            record = ticket.record

    payload = record.to_dict()
    if not payload["qr_image"]:
        payload["qr_image"] = to_data_uri(render_qr_png(record.qr_token))
    return payload
