import enum

from sqlalchemy.exc import IntegrityError


class TicketingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TicketingError):
    status_code = 400


class NotFound(TicketingError):
    status_code = 404


class Conflict(TicketingError):
    status_code = 400


class CodeAlreadyUsed(Conflict):
    pass


class EventFull(Conflict):
    pass


class WrongParty(Conflict):
    pass


class AlreadyScanned(Conflict):
    pass


class StoreError(TicketingError):
    status_code = 500


class CodeSpaceExhausted(TicketingError):
    status_code = 500


class ConstraintViolation(enum.Enum):
    FOREIGN_KEY = "foreign_key"
    NOT_NULL = "not_null"
    UNIQUE = "unique"
    OTHER = "other"


_SQLSTATE = {
    "23503": ConstraintViolation.FOREIGN_KEY,
    "23502": ConstraintViolation.NOT_NULL,
    "23505": ConstraintViolation.UNIQUE,
}

_SQLITE_ERRORNAME = {
    "SQLITE_CONSTRAINT_FOREIGNKEY": ConstraintViolation.FOREIGN_KEY,
    "SQLITE_CONSTRAINT_NOTNULL": ConstraintViolation.NOT_NULL,
    "SQLITE_CONSTRAINT_UNIQUE": ConstraintViolation.UNIQUE,
    "SQLITE_CONSTRAINT_PRIMARYKEY": ConstraintViolation.UNIQUE,
}


def classify_integrity_error(exc: IntegrityError) -> ConstraintViolation:
    orig = exc.orig

    # psycopg exposes sqlstate, psycopg2 pgcode
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _SQLSTATE:
        return _SQLSTATE[sqlstate]

    errorname = getattr(orig, "sqlite_errorname", None)
    if errorname in _SQLITE_ERRORNAME:
        return _SQLITE_ERRORNAME[errorname]

    # drivers without typed codes
    msg = str(orig).upper()
    if "FOREIGN KEY" in msg:
        return ConstraintViolation.FOREIGN_KEY
    if "NOT NULL" in msg:
        return ConstraintViolation.NOT_NULL
    if "UNIQUE" in msg or "DUPLICATE KEY" in msg:
        return ConstraintViolation.UNIQUE
    return ConstraintViolation.OTHER
