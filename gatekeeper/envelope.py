"""
JSON result envelope.

Every response body, success or failure, has the same shape:

    {
        "status": "success" | "error",
        "result": <payload or null>,
        "errors": {<field>: [<message>, ...]} or null,
        "meta": {"path": ..., "timestamp": ..., "duration_ms": ...}
    }

Timing starts from ``g.start_time``, set by the request middleware.
"""

import time
from typing import Any, Dict, List, Optional

from flask import g, has_request_context

from core.timestamps import isonow


def _meta(path: str) -> Dict[str, Any]:
    start = g.get("start_time") if has_request_context() else None
    duration_ms = (time.time() - start) * 1000 if start else 0
    return {
        "path": path,
        "timestamp": isonow(),
        "duration_ms": round(duration_ms),
    }


def make_envelope(path: str, result: Any) -> Dict[str, Any]:
    return {
        "status": "success",
        "result": result,
        "errors": None,
        "meta": _meta(path),
    }


def make_error(path: str, errors: Optional[Dict[str, List[str]]]) -> Dict[str, Any]:
    return {
        "status": "error",
        "result": None,
        "errors": errors or {},
        "meta": _meta(path),
    }
