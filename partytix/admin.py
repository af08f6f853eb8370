import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .codegen import generate_codes
from .db import SessionLocal, get_db
from .deps import get_preview_cache, get_redis
from .errors import (
    AlreadyScanned,
    Conflict,
    NotFound,
    TicketingError,
    ValidationError,
    WrongParty,
)
from .guests import add_pending_guest, guest_summary, list_guests, set_guest_status, status_label
from .idempotency import get_cached_response, set_cached_response
from .models import Code, Party, ScanAudit, User
from .preview_cache import PreviewCache
from .redemption import mark_code_used
from .scan import scan_qr_code, scan_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])

_REJECT_REASONS = {
    ValidationError: "MISSING_QR",
    NotFound: "INVALID_QR",
    WrongParty: "WRONG_PARTY",
    AlreadyScanned: "ALREADY_SCANNED",
}


# -------------------------
# Codes
# -------------------------
class GenerateCodesReq(BaseModel):
    party_id: int | None = None
    price_id: int | None = None
    price_name: str | None = None
    quantity: int | None = None
    persist: bool = True


@router.post("/generate-codes")
async def generate_party_codes(
    req: GenerateCodesReq,
    db: Session = Depends(get_db),
    cache: PreviewCache = Depends(get_preview_cache),
):
    batch = await generate_codes(
        db,
        cache,
        party_id=req.party_id,
        price_id=req.price_id,
        price_name=req.price_name,
        quantity=req.quantity,
        persist=req.persist,
    )
    return batch.to_response()


@router.get("/parties/{party_id}/codes")
def list_party_codes(party_id: int, db: Session = Depends(get_db)):
    rows = db.scalars(
        select(Code).where(Code.party_id == party_id).order_by(Code.created_at.desc(), Code.id.desc())
    ).all()
    return {"success": True, "codes": [c.to_dict() for c in rows]}


class UseCodeReq(BaseModel):
    code: str | None = None
    user_id: int | None = None


@router.post("/codes/use")
def use_code(req: UseCodeReq, db: Session = Depends(get_db)):
    code = (req.code or "").strip()
    if not code:
        raise ValidationError("Code is required")
    if req.user_id is not None and db.get(User, req.user_id) is None:
        raise NotFound("User not found")

    row = db.scalars(select(Code).where(Code.code == code)).first()
    if row is None or not mark_code_used(db, row.id, req.user_id):
        db.rollback()
        raise Conflict("Code not found or already used")
    db.commit()
    db.refresh(row)
    return {"success": True, "message": "Code successfully used", "code": row.to_dict()}


# -------------------------
# Door scan
# -------------------------
class ScanReq(BaseModel):
    qr_code_data: str | None = None
    party_id: int | None = None


async def _scan(raw: str | None, party_id: int | None, request: Request, db: Session, redis,
                idempotency_key: str | None):
    cached = await get_cached_response(redis, "scan", idempotency_key)
    if cached:
        return cached

    decision_id = str(uuid.uuid4())
    ip = request.client.host if request.client else "unknown"
    ua = request.headers.get("user-agent", "")

    try:
        record = scan_qr_code(db, raw, party_id)
    except TicketingError as e:
        reason = _REJECT_REASONS.get(type(e), "ERROR")
        _audit(decision_id, raw, party_id, None, ip, ua, "REJECTED", reason)
        raise

    _audit(decision_id, raw, record.party_id, record.id, ip, ua, "ACCEPTED", "OK")
    resp = {
        "success": True,
        "message": "QR code scanned successfully",
        "decision_id": decision_id,
        "qr_code": scan_response(record),
    }
    await set_cached_response(redis, "scan", idempotency_key, resp)
    return resp


@router.get("/scan-qr-code")
async def scan_qr_code_get(
    request: Request,
    qr: str | None = None,
    party: int | None = None,
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return await _scan(qr, party, request, db, redis, idempotency_key)


@router.post("/scan-qr-code")
async def scan_qr_code_post(
    req: ScanReq,
    request: Request,
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    return await _scan(req.qr_code_data, req.party_id, request, db, redis, idempotency_key)


def _audit(decision_id: str, raw: str | None, party_id: int | None, qr_record_id: int | None,
           ip: str, ua: str, status: str, reason: str):
    db = SessionLocal()
    try:
        db.add(ScanAudit(
            decision_id=decision_id,
            raw_value=(raw or "")[:512],
            party_id=party_id,
            qr_record_id=qr_record_id,
            ip=ip,
            user_agent=ua,
            status=status,
            reason_code=reason,
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("scan audit not written decision_id=%s: %s", decision_id, e)
    finally:
        db.close()


@router.get("/audit")
def get_audit(limit: int = 80, party_id: Optional[int] = None, db: Session = Depends(get_db)):
    q = db.query(ScanAudit, Party).join(Party, Party.id == ScanAudit.party_id, isouter=True)
    if party_id:
        q = q.filter(ScanAudit.party_id == party_id)
    rows = q.order_by(ScanAudit.created_at.desc(), ScanAudit.id.desc()).limit(limit).all()

    return [
        {
            "created_at": str(log.created_at),
            "decision_id": log.decision_id,
            "raw_value": log.raw_value,
            "party_id": log.party_id,
            "party_title": p.title if p else None,
            "qr_record_id": log.qr_record_id,
            "status": log.status,
            "reason_code": log.reason_code,
        }
        for log, p in rows
    ]


# -------------------------
# Guest list
# -------------------------
class GuestReq(BaseModel):
    name: str
    email: str | None = None


class GuestStatusReq(BaseModel):
    status: str | None = None
    validated: bool | None = None


def _require_party(db: Session, party_id: int) -> Party:
    party = db.get(Party, party_id)
    if party is None:
        raise NotFound("Party not found")
    return party


@router.post("/parties/{party_id}/guests")
def add_guest(party_id: int, req: GuestReq, db: Session = Depends(get_db)):
    _require_party(db, party_id)
    entry = add_pending_guest(db, party_id, req.name, req.email)
    return {"success": True, "guest": {"id": entry.id, "name": entry.name, "status": status_label(entry.validated)}}


@router.get("/parties/{party_id}/guests")
def get_party_guests(party_id: int, db: Session = Depends(get_db)):
    return [
        {"id": g.id, "name": g.name, "email": g.email, "status": status_label(g.validated)}
        for g in list_guests(db, party_id)
    ]


@router.get("/parties/{party_id}/guests/summary")
def get_guests_summary(party_id: int, db: Session = Depends(get_db)):
    return guest_summary(db, party_id)


@router.patch("/parties/{party_id}/guests/{guest_id}/status")
def update_guest_status(party_id: int, guest_id: int, req: GuestStatusReq, db: Session = Depends(get_db)):
    status = req.validated if req.validated is not None else req.status
    entry = set_guest_status(db, party_id, guest_id, status)
    return {
        "success": True,
        "guest": {"id": entry.id, "name": entry.name, "party_id": entry.party_id, "validated": entry.validated},
    }
