from __future__ import annotations
import time, uuid
from datetime import date, datetime, timezone

def ok(msg: str, **data):    return {"ok": True,  "message": msg, **({"data": data} if data else {})}
def err(msg: str, code="", **data): return {"ok": False, "message": msg, "code": code, **({"data": data} if data else {})}

STORE_ERROR = "STORE_ERROR"

def store_error(msg: str = "The operation could not be completed. Please try again later."):
    return err(msg, code=STORE_ERROR)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def today() -> date:
    return utcnow().date()

def new_barcode() -> str:
    return f"BH-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"

def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
