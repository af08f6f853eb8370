import io
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image
from sqlalchemy.exc import IntegrityError

from partytix import qr
from partytix.errors import NotFound, StoreError
from partytix.models import QRRecord, User
from partytix.qr import (
    get_ticket_for_user,
    issue_ticket,
    make_qr_token,
    owner_tag,
    parse_qr_token,
    render_qr_png,
    ticket_valid_until,
)
from tests.helpers import InMemoryBlobStore, seed_code, seed_party, seed_price, seed_qr, seed_user

NOW = datetime(2030, 1, 2, 12, 0, tzinfo=timezone.utc)


def test_token_layout_and_parse():
    token = make_qr_token(owner_tag(None, "Mary Jane Watson"), 12, 34, 1700000000000)
    assert token.startswith("QR-GUEST-Mary-Jane-Watson-12-34-1700000000000-")

    parsed = parse_qr_token(token)
    assert (parsed.owner, parsed.party_id, parsed.code_id) == ("GUEST-Mary-Jane-Watson", 12, 34)
    assert parsed.owner_id is None

    member = parse_qr_token(make_qr_token(owner_tag(5), 12, None, 1))
    assert (member.owner_id, member.party_id, member.code_id) == (5, 12, None)

    assert parse_qr_token("not-a-token") is None
    assert parse_qr_token("QR-5-x-1-2-AB") is None


def test_png_is_square_300px():
    png = render_qr_png("QR-1-2-3-4-ABCDEF")
    img = Image.open(io.BytesIO(png))
    assert img.format == "PNG"
    assert img.size == (300, 300)


@pytest.mark.parametrize("party_date, expected", [
    ("5/9/30 • 23:00-06:00", datetime(2030, 9, 5, 23, 59, 59, tzinfo=timezone.utc)),
    ("25/12/2031", datetime(2031, 12, 25, 23, 59, 59, tzinfo=timezone.utc)),
    ("2030-09-05T22:00:00Z", datetime(2030, 9, 5, 22, 0, tzinfo=timezone.utc)),
    ("2030-09-05T22:00:00", datetime(2030, 9, 5, 22, 0, tzinfo=timezone.utc)),
])
def test_valid_until_from_party_date(party_date, expected):
    assert ticket_valid_until(party_date, NOW) == expected


@pytest.mark.parametrize("party_date", [None, "", "next friday", "31/2/30"])
def test_valid_until_falls_back_to_thirty_days(party_date):
    assert ticket_valid_until(party_date, NOW) == NOW + timedelta(days=30)


def test_issue_uploads_and_records(db, blob_store):
    party = seed_party(db)
    price = seed_price(db, party)
    user = seed_user(db)
    code = seed_code(db, party, price, used=True, user=user)

    ticket = issue_ticket(db, blob_store, party=party, code_id=code.id, user_id=user.id, now=NOW)

    path = f"qr_{party.id}_{code.id}_{int(NOW.timestamp() * 1000)}.png"
    assert ticket.image_url == f"https://blobs.test/qr-codes/{path}"
    assert blob_store.blobs[("qr-codes", path)][1] == "image/png"
    record = ticket.record
    assert (record.user_id, record.party_id, record.code_id, record.status) == (user.id, party.id, code.id, "not used")
    assert record.qr_image == ticket.image_url
    assert record.valid_until == datetime(2030, 9, 5, 23, 59, 59, tzinfo=timezone.utc)


def test_issue_is_idempotent_per_owner_party_code(db, blob_store):
    party = seed_party(db)
    price = seed_price(db, party)
    user = seed_user(db)
    code = seed_code(db, party, price, used=True, user=user)

    first = issue_ticket(db, blob_store, party=party, code_id=code.id, user_id=user.id)
    second = issue_ticket(db, blob_store, party=party, code_id=code.id, user_id=user.id)

    assert second.reused
    assert (second.token, second.image_url) == (first.token, first.image_url)
    assert db.query(QRRecord).count() == 1
    assert len(blob_store.blobs) == 1


def test_missing_container_is_created_and_upload_retried(db):
    store = InMemoryBlobStore(containers=())
    party = seed_party(db)

    ticket = issue_ticket(db, store, party=party, code_id=None, user_id=seed_user(db).id)

    assert store.created == [("qr-codes", True)]
    assert ticket.image_url.startswith("https://blobs.test/qr-codes/")


@pytest.mark.parametrize("store", [None, InMemoryBlobStore(fail=True)])
def test_upload_failure_falls_back_to_data_uri(db, store):
    party = seed_party(db)

    ticket = issue_ticket(db, store, party=party, code_id=None, user_id=seed_user(db).id)

    assert ticket.image_url.startswith("data:image/png;base64,")
    assert ticket.record.qr_image == ticket.image_url


def test_rejected_code_reference_is_dropped(db, blob_store):
    party = seed_party(db)
    user = seed_user(db)

    ticket = issue_ticket(db, blob_store, party=party, code_id=9999, user_id=user.id)

    assert ticket.record is not None
    assert ticket.record.code_id is None
    # the token still names the code it was issued for
    assert parse_qr_token(ticket.token).code_id == 9999

    again = issue_ticket(db, blob_store, party=party, code_id=9999, user_id=user.id)
    assert again.reused and again.token == ticket.token


def _owner_required(original):
    def insert(db, values):
        if values.get("user_id") is None:
            raise IntegrityError(
                "INSERT INTO qr_codes", {}, sqlite3.IntegrityError("NOT NULL constraint failed: qr_codes.user_id")
            )
        return original(db, values)
    return insert


def test_required_owner_provisions_guest_user(db, blob_store, monkeypatch):
    monkeypatch.setattr(qr, "_insert_record", _owner_required(qr._insert_record))
    party = seed_party(db)
    price = seed_price(db, party)
    code = seed_code(db, party, price, used=True)

    ticket = issue_ticket(db, blob_store, party=party, code_id=code.id, guest_name="Ada Lovelace")

    guest = db.query(User).filter_by(email=f"guest-ada-lovelace-{party.id}@partytix.guest").one()
    assert guest.is_guest and guest.name == "Ada Lovelace"
    assert ticket.record.user_id == guest.id
    assert ticket.token.startswith(f"QR-GUEST-Ada-Lovelace-{party.id}-{code.id}-")

    again = issue_ticket(db, blob_store, party=party, code_id=code.id, guest_name="Ada Lovelace")
    assert again.reused and again.token == ticket.token
    assert db.query(User).filter_by(is_guest=True).count() == 1


def test_unrecoverable_insert_still_returns_ticket(db, blob_store, monkeypatch):
    def reject(db, values):
        raise IntegrityError("INSERT INTO qr_codes", {}, sqlite3.IntegrityError("CHECK constraint failed: status"))

    monkeypatch.setattr(qr, "_insert_record", reject)
    party = seed_party(db)

    ticket = issue_ticket(db, blob_store, party=party, code_id=None, user_id=seed_user(db).id)

    assert ticket.record is None
    assert ticket.token.startswith("QR-")
    assert ticket.image_url
    assert db.query(QRRecord).count() == 0


def test_each_fallback_runs_once(db, blob_store, monkeypatch):
    calls = []

    def reject(db, values):
        calls.append(dict(values))
        raise IntegrityError("INSERT INTO qr_codes", {}, sqlite3.IntegrityError("FOREIGN KEY constraint failed"))

    monkeypatch.setattr(qr, "_insert_record", reject)
    party = seed_party(db)

    ticket = issue_ticket(db, blob_store, party=party, code_id=55, user_id=seed_user(db).id)

    assert ticket.record is None
    assert [c["code_id"] for c in calls] == [55, None]


def test_get_ticket_prefers_existing_record(db, blob_store):
    party = seed_party(db)
    user = seed_user(db)
    seed_qr(db, party, "QR-legacy-record", user=user, qr_image=None)

    payload = get_ticket_for_user(db, blob_store, user.id, party.id)

    assert payload["qr_token"] == "QR-legacy-record"
    assert payload["qr_image"].startswith("data:image/png;base64,")
    assert payload["status"] == "not used"


def test_get_ticket_follows_used_code(db, blob_store):
    party = seed_party(db)
    price = seed_price(db, party)
    user = seed_user(db)
    code = seed_code(db, party, price, used=True, user=user)
    # issued before the user was known
    seed_qr(db, party, "QR-GUEST-ANON-x", code=code)

    assert get_ticket_for_user(db, blob_store, user.id, party.id)["qr_token"] == "QR-GUEST-ANON-x"


def test_get_ticket_issues_on_demand(db, blob_store):
    party = seed_party(db)
    price = seed_price(db, party)
    user = seed_user(db)
    code = seed_code(db, party, price, used=True, user=user)

    payload = get_ticket_for_user(db, blob_store, user.id, party.id)

    assert payload["qr_token"].startswith(f"QR-{user.id}-{party.id}-{code.id}-")
    assert db.query(QRRecord).count() == 1
    assert get_ticket_for_user(db, blob_store, user.id, party.id)["id"] == payload["id"]


def test_get_ticket_without_redemption(db, blob_store):
    party = seed_party(db)
    user = seed_user(db)
    with pytest.raises(NotFound, match="QR code not found"):
        get_ticket_for_user(db, blob_store, user.id, party.id)


def test_get_ticket_on_demand_not_stored(db, blob_store, monkeypatch):
    party = seed_party(db)
    price = seed_price(db, party)
    user = seed_user(db)
    seed_code(db, party, price, used=True, user=user)
    monkeypatch.setattr(qr, "persist_qr_record", lambda db, values, guest_name=None: None)

    with pytest.raises(StoreError, match="Error generating QR code"):
        get_ticket_for_user(db, blob_store, user.id, party.id)
