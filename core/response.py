"""
Uniform JSON envelope for all command responses.

Every command returns: {"ok": true/false, "data": {...}, "meta": {"ts", "ms"}}
Failures carry {"error": {"code", "message"}} instead of "data".
Absent optional fields are omitted, never emitted as null.
"""

import dataclasses
import json
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Optional, Sequence

from loguru import logger
from pydantic import BaseModel


def utc_now_iso() -> str:
    """Current UTC time in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _to_jsonable(value: Any) -> Any:
    """Fallback conversion for values json cannot encode natively."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _meta(ms: Optional[float]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"ts": utc_now_iso()}
    if ms is not None:
        meta["ms"] = int(ms)
    return meta


def _serialize(envelope: Dict[str, Any]) -> str:
    try:
        return json.dumps(envelope, default=_to_jsonable, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError, RecursionError) as e:
        logger.error(f"Response serialization failed: {e}")
        return json.dumps({
            "ok": False,
            "error": {"code": "internal_error", "message": f"Response serialization failed: {e}"},
            "meta": envelope.get("meta") or _meta(None),
        })


# ── Payload shapes ──

def as_items(items: Sequence[Any]) -> Dict[str, Any]:
    """List payload with count."""
    items = list(items)
    return {"items": items, "count": len(items)}


def as_content(content: str, format: str = "text") -> Dict[str, Any]:
    """Text or markdown payload."""
    return {"content": content, "format": format}


def as_message(message: str) -> Dict[str, Any]:
    """Simple confirmation payload."""
    return {"message": message}


def as_check(result: bool, detail: Optional[str] = None) -> Dict[str, Any]:
    """Boolean check payload."""
    return {"result": result, "detail": detail}


# ── Success responses ──

def ok(data: Any = None, ms: Optional[float] = None) -> str:
    """Return arbitrary structured data."""
    envelope: Dict[str, Any] = {"ok": True}
    if data is not None:
        envelope["data"] = data
    envelope["meta"] = _meta(ms)
    return _serialize(envelope)


def items(values: Sequence[Any], ms: Optional[float] = None) -> str:
    """Return a list of items with count."""
    return ok(as_items(values), ms)


def content(text: str, format: str = "text", ms: Optional[float] = None) -> str:
    """Return text/markdown content."""
    return ok(as_content(text, format), ms)


def confirm(message: str, ms: Optional[float] = None) -> str:
    """Return a simple confirmation message."""
    return ok(as_message(message), ms)


def check(result: bool, detail: Optional[str] = None, ms: Optional[float] = None) -> str:
    """Return a boolean check result."""
    return ok(as_check(result, detail), ms)


# ── Error responses ──

def error(code: str, message: str, ms: Optional[float] = None) -> str:
    """Return a structured error."""
    return _serialize({
        "ok": False,
        "error": {"code": code, "message": message},
        "meta": _meta(ms),
    })
