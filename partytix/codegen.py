"""Preview codes stay in the preview cache; persisted codes are stored as P<party>-T<price>-<raw>."""
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.orm import Session

from . import config
from .errors import (
    CodeSpaceExhausted,
    Conflict,
    ConstraintViolation,
    NotFound,
    StoreError,
    ValidationError,
    classify_integrity_error,
)
from .models import Code, PriceTier
from .preview_cache import PreviewCache

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_uppercase + string.digits
_BASE36 = string.digits + string.ascii_uppercase
EMBEDDED_CODE_RE = re.compile(r"^P(\d+)-T(\d+)-([A-Za-z0-9]+)$")


def generate_short_code(length: int = 6) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def generate_random_code() -> str:
    return generate_short_code(8)


def _base36(n: int) -> str:
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits)) or "0"


def generate_unique_code() -> str:
    """4 random characters followed by the tail of the base-36 millisecond clock."""
    stamp = _base36(int(time.time() * 1000))
    return generate_random_code()[:4] + stamp[-4:]


def embed_code(party_id: int, price_id: int, raw_code: str) -> str:
    return f"P{int(party_id)}-T{int(price_id)}-{raw_code}"


def parse_embedded_code(code: str) -> tuple[int, int] | None:
    match = EMBEDDED_CODE_RE.match(str(code))
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


@dataclass
class CodeBatch:
    codes: list[str]
    saved_codes: list[Code] = field(default_factory=list)
    persisted: bool = False
    message: str = ""

    def to_response(self) -> dict:
        return {
            "success": True,
            "message": self.message,
            "codes": self.codes,
            "saved_codes": [
                {"id": c.id, "code": c.code, "price_id": c.price_id, "already_used": c.already_used}
                for c in self.saved_codes
            ],
        }


def validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Quantity must be between 1 and 100")
    if quantity < 1 or quantity > config.MAX_CODES_PER_BATCH:
        raise ValidationError("Quantity must be between 1 and 100")
    return quantity


def resolve_price_tier(db: Session, party_id: int, price_id: int | None = None,
                       price_name: str | None = None) -> PriceTier:
    if price_id:
        price = db.get(PriceTier, int(price_id))
        if price is None:
            raise NotFound("Ticket type not found")
        if price.party_id != int(party_id):
            raise ValidationError("Ticket type does not belong to this party")
        return price

    price = db.scalars(
        select(PriceTier).where(PriceTier.party_id == int(party_id), PriceTier.name == str(price_name))
    ).first()
    if price is None:
        raise NotFound("Ticket type not found for this party")
    return price


async def generate_preview_batch(cache: PreviewCache, party_id: int, price_id: int, quantity: int) -> CodeBatch:
    codes: list[str] = []
    for _ in range(quantity):
        # unique within this batch and the live cache only
        code = generate_short_code(6)
        while code in codes or await cache.contains(code):
            code = generate_short_code(6)
        await cache.put(code, party_id, price_id)
        codes.append(code)

    logger.info("preview codes generated party_id=%s price_id=%s count=%d", party_id, price_id, len(codes))
    return CodeBatch(
        codes=codes,
        persisted=False,
        message=f"Successfully generated {len(codes)} codes (preview, not saved, 6-char)",
    )


def _existing_codes(db: Session) -> set[str] | None:
    """All stored code strings, or None when the code table cannot be read."""
    try:
        return set(db.scalars(select(Code.code)).all())
    except (OperationalError, ProgrammingError) as e:
        db.rollback()
        logger.warning("code store unreadable, codes will not be saved: %s", e)
        return None


def _draw_unique_codes(party_id: int, price_id: int, quantity: int, taken: set[str]) -> list[str]:
    codes: list[str] = []
    batch: set[str] = set()
    attempts = 0
    max_attempts = quantity * 100

    while len(codes) < quantity:
        attempts += 1
        if attempts > max_attempts:
            logger.error("code generation gave up after %d attempts party_id=%s", attempts - 1, party_id)
            raise CodeSpaceExhausted("Unable to generate unique codes. Please try with a smaller quantity.")

        candidate = embed_code(party_id, price_id, generate_random_code())
        if candidate in batch or candidate in taken:
            if attempts <= quantity * 10:
                continue
            candidate = embed_code(party_id, price_id, generate_unique_code())
            if candidate in batch or candidate in taken:
                continue

        batch.add(candidate)
        codes.append(candidate)

    return codes


def generate_persisted_batch(db: Session, party_id: int, price_id: int, quantity: int) -> CodeBatch:
    existing = _existing_codes(db)
    codes = _draw_unique_codes(party_id, price_id, quantity, existing or set())

    if existing is None:
        return CodeBatch(
            codes=codes,
            persisted=False,
            message=f"Successfully generated {len(codes)} codes (not saved; codes table missing)",
        )

    # another request may have inserted the same strings since the first read
    clash = db.scalars(select(Code.code).where(Code.code.in_(codes))).all()
    if clash:
        logger.error("duplicate codes found before insert: %s", clash)
        raise StoreError("Code generation failed due to unexpected duplicates. Please try again.")

    records = [
        Code(party_id=int(party_id), price_id=int(price_id), code=code, already_used=False, user_id=None)
        for code in codes
    ]
    try:
        db.add_all(records)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if classify_integrity_error(e) is ConstraintViolation.UNIQUE:
            raise Conflict("Code generation failed due to duplicate codes. Please try again.")
        logger.error("code insert failed: %s", e)
        raise StoreError("Error saving codes to database")

    logger.info("codes saved party_id=%s price_id=%s count=%d", party_id, price_id, len(records))
    return CodeBatch(
        codes=codes,
        saved_codes=records,
        persisted=True,
        message=f"Successfully generated {len(codes)} codes",
    )


async def generate_codes(db: Session, cache: PreviewCache, *, party_id, price_id=None, price_name=None,
                         quantity=None, persist: bool = True) -> CodeBatch:
    if not party_id or (not price_id and not price_name) or quantity is None:
        raise ValidationError("Missing required fields: party_id, price_id or price_name, quantity")

    quantity = validate_quantity(quantity)
    price = resolve_price_tier(db, party_id, price_id, price_name)

    if not persist:
        return await generate_preview_batch(cache, int(party_id), price.id, quantity)
    return generate_persisted_batch(db, int(party_id), price.id, quantity)
