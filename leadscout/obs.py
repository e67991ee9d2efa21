from __future__ import annotations

import json as _json
import logging as _logging
import threading
from typing import Any, Dict, Optional

from leadscout import settings

# Per-service usage counters for the current process
_USAGE: Dict[str, Dict[str, Any]] = {}
_LOCK = threading.Lock()

# Optional run id stamped on every structured line
_CTX: Dict[str, Optional[str]] = {"run_id": None}


def set_run_context(run_id: Optional[str]) -> None:
    _CTX["run_id"] = run_id


def log_event(stage: str, event: str, status: str, *, duration_ms: Optional[int] = None,
              error_code: Optional[str] = None, **extra: Any) -> None:
    # Structured JSON log
    try:
        _logging.getLogger("leadscout.obs.event").info(_json.dumps({
            "run_id": _CTX.get("run_id"),
            "stage": stage,
            "event": event,
            "status": status,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "extra": extra or None,
        }, default=str))
    except Exception:
        pass


def bump_vendor(vendor: str, *, calls: int = 0, errors: int = 0,
                rate_limit_hits: int = 0, quota_exhausted: bool = False) -> None:
    with _LOCK:
        row = _USAGE.setdefault(vendor, {
            "calls": 0,
            "errors": 0,
            "rate_limit_hits": 0,
            "quota_exhausted": False,
        })
        row["calls"] += calls
        row["errors"] += errors
        row["rate_limit_hits"] += rate_limit_hits
        row["quota_exhausted"] = bool(row["quota_exhausted"] or quota_exhausted)
    if not settings.LOG_VENDOR_USAGE:
        return
    # Structured JSON log
    try:
        _logging.getLogger("leadscout.obs.vendor").info(_json.dumps({
            "run_id": _CTX.get("run_id"),
            "vendor": vendor,
            "calls": calls,
            "errors": errors,
            "rate_limit_hits": rate_limit_hits,
            "quota_exhausted": quota_exhausted,
        }))
    except Exception:
        pass


def vendor_usage() -> Dict[str, Dict[str, Any]]:
    with _LOCK:
        return {k: dict(v) for k, v in _USAGE.items()}


def reset_vendor_usage() -> None:
    with _LOCK:
        _USAGE.clear()
