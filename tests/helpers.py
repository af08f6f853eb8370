import os

import httpx
from azure.core.exceptions import AzureError

from partytix.models import Code, Party, PriceTier, QRRecord, User
from partytix.storage import BlobStore, BucketNotFound

REDIS_URL = os.getenv("REDIS_URL")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryBlobStore(BlobStore):
    def __init__(self, containers=("qr-codes",), fail: bool = False):
        self.containers = set(containers)
        self.fail = fail
        self.blobs = {}
        self.created = []

    def upload(self, container, path, data, content_type):
        if self.fail:
            raise AzureError("blob store unreachable")
        if container not in self.containers:
            raise BucketNotFound(container)
        self.blobs[(container, path)] = (data, content_type)
        return f"https://blobs.test/{container}/{path}"

    def create_container(self, container, public=True):
        self.containers.add(container)
        self.created.append((container, public))


class FakeRedis:
    """Just the calls the idempotency layer makes."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl


# -------------------------
# Seed data
# -------------------------
def seed_party(db, title="Warehouse Night", attendees="0/100", date="5/9/30 • 23:00-06:00", **kw) -> Party:
    party = Party(title=title, location="Dock 4", date=date, administrator="crew", attendees=attendees, **kw)
    db.add(party)
    db.commit()
    return party


def seed_price(db, party: Party, name="General", amount=10.0, **kw) -> PriceTier:
    price = PriceTier(party_id=party.id, name=name, amount=amount, **kw)
    db.add(price)
    db.commit()
    return price


def seed_user(db, name="Ada", email=None, is_guest=False) -> User:
    user = User(name=name, email=email or f"{name.lower().replace(' ', '.')}@example.com", is_guest=is_guest)
    db.add(user)
    db.commit()
    return user


def seed_code(db, party: Party, price: PriceTier, code: str | None = None, used=False, user: User | None = None) -> Code:
    row = Code(
        party_id=party.id,
        price_id=price.id,
        code=code or f"P{party.id}-T{price.id}-SEED{db.query(Code).count():04d}",
        already_used=used,
        user_id=user.id if user else None,
    )
    db.add(row)
    db.commit()
    return row


def seed_qr(db, party: Party, token: str, user: User | None = None, code: Code | None = None, **kw) -> QRRecord:
    record = QRRecord(
        user_id=user.id if user else None,
        party_id=party.id,
        code_id=code.id if code else None,
        qr_token=token,
        qr_image=kw.pop("qr_image", "https://blobs.test/qr-codes/seed.png"),
        **kw,
    )
    db.add(record)
    db.commit()
    return record


def reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


# -------------------------
# HTTP
# -------------------------
async def generate(client: httpx.AsyncClient, party_id: int, price_id: int, quantity: int = 1, persist=True) -> list[str]:
    r = await client.post(
        "/generate-codes",
        json={"party_id": party_id, "price_id": price_id, "quantity": quantity, "persist": persist},
    )
    r.raise_for_status()
    data = r.json()
    assert data.get("success") is True, data
    return data["codes"]


async def redeem(client: httpx.AsyncClient, code: str, user_id: int | None = None, headers=None) -> httpx.Response:
    body = {"code": code}
    if user_id is not None:
        body["user_id"] = user_id
    return await client.post("/verify-and-add", json=body, headers=headers or {})
