"""Door list: guests waiting for approval, validated or denied per party."""
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotFound, ValidationError
from .models import GuestEntry, Party

_VALIDATED = {"validated", "valid", "approve", "approved"}
_DENIED = {"denied", "invalid", "reject", "rejected"}


def status_label(flag: bool | None) -> str:
    if flag is True:
        return "Valid"
    if flag is False:
        return "Invalid"
    return "Pending"


def add_pending_guest(db: Session, party_id: int, name: str, email: str | None = None) -> GuestEntry:
    entry = GuestEntry(party_id=party_id, name=name or "Guest", email=email, validated=None)
    db.add(entry)
    db.commit()
    return entry


def list_guests(db: Session, party_id: int) -> list[GuestEntry]:
    return list(db.scalars(
        select(GuestEntry).where(GuestEntry.party_id == party_id).order_by(GuestEntry.id.desc())
    ).all())


def guest_summary(db: Session, party_id: int) -> dict:
    party = db.get(Party, party_id)
    guests = list_guests(db, party_id)

    def brief(g: GuestEntry) -> dict:
        return {"id": g.id, "name": g.name}

    pending = [brief(g) for g in guests if g.validated is None]
    validated = [brief(g) for g in guests if g.validated is True]
    denied = [brief(g) for g in guests if g.validated is False]
    return {
        "party": {"id": party_id, "title": party.title if party else None},
        "totals": {
            "total": len(guests),
            "pending": len(pending),
            "validated": len(validated),
            "denied": len(denied),
        },
        "lists": {"pending": pending, "validated": validated, "denied": denied},
    }


def parse_guest_status(status: str | bool | None) -> bool:
    if isinstance(status, bool):
        return status
    s = str(status or "").strip().lower()
    if s in _VALIDATED:
        return True
    if s in _DENIED:
        return False
    raise ValidationError("Missing status/validated in request")


def set_guest_status(db: Session, party_id: int, guest_id: int, status: str | bool | None) -> GuestEntry:
    flag = parse_guest_status(status)
    entry = db.scalars(
        select(GuestEntry).where(GuestEntry.id == guest_id, GuestEntry.party_id == party_id)
    ).first()
    if entry is None:
        raise NotFound("Guest not found")
    entry.validated = flag
    db.commit()
    return entry
