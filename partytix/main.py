import logging

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .admin import router as admin_router
from .db import Base, engine, get_db
from .deps import get_blob_store, get_preview_cache, get_redis
from .errors import CodeAlreadyUsed, NotFound, TicketingError, ValidationError
from .idempotency import get_cached_response, set_cached_response
from .models import Code, Party, QRRecord
from .preview_cache import PreviewCache
from .qr import get_ticket_for_user
from .redemption import verify_and_add
from .storage import BlobStore

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Party Ticketing", version="1.0.0")
app.include_router(admin_router)

# No migration tooling; tables are created on startup
Base.metadata.create_all(bind=engine)


@app.exception_handler(TicketingError)
async def ticketing_error_handler(request: Request, exc: TicketingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        field = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        message = f"Invalid {field}: {errors[0].get('msg')}" if field else str(errors[0].get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("store failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


class VerifyReq(BaseModel):
    code: str | None = None
    user_id: int | None = None


class CodeReq(BaseModel):
    code: str | None = None


@app.post("/verify-and-add")
async def verify_and_add_party(
    req: VerifyReq,
    db: Session = Depends(get_db),
    cache: PreviewCache = Depends(get_preview_cache),
    blob_store: BlobStore | None = Depends(get_blob_store),
    redis=Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = await get_cached_response(redis, "verify", idempotency_key)
    if cached:
        return cached

    result = await verify_and_add(db, cache, blob_store, req.code, req.user_id)
    resp = result.to_response()
    await set_cached_response(redis, "verify", idempotency_key, resp)
    return resp


@app.get("/qr-code/{user_id}/{party_id}")
def get_qr_code(
    user_id: int,
    party_id: int,
    db: Session = Depends(get_db),
    blob_store: BlobStore | None = Depends(get_blob_store),
):
    return {"success": True, "qr_code": get_ticket_for_user(db, blob_store, user_id, party_id)}


@app.post("/codes/validate")
def validate_code(req: CodeReq, db: Session = Depends(get_db)):
    code = (req.code or "").strip()
    if not code:
        raise ValidationError("Code is required")

    row = db.scalars(select(Code).where(Code.code == code)).first()
    if row is None:
        raise NotFound("Invalid code")
    if row.already_used:
        raise CodeAlreadyUsed("Code has already been used")

    party = db.get(Party, row.party_id)
    payload = row.to_dict()
    payload["party"] = {"title": party.title, "location": party.location, "date": party.date} if party else None
    return {"success": True, "message": "Code is valid", "code": payload}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(select(Code.id).limit(1))
        db.execute(select(QRRecord.id).limit(1))
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("health check failed: %s", e)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Codes or QR table not accessible", "error": str(e)},
        )
    return {
        "success": True,
        "message": "Database connection successful",
        "codes_accessible": True,
        "qr_accessible": True,
    }
