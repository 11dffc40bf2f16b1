"""JSONL audit records for provisioning transitions."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

AUDIT_REDACTED_FIELDS = {"text", "output", "stderr", "stdout", "content"}


def setup_audit_logger(config: dict):
    """Setup dedicated JSONL audit logger if enabled."""
    audit_conf = (config or {}).get("logging", {}).get("audit", {})
    if not audit_conf.get("enabled", False):
        return None

    audit_file = audit_conf.get("file", "./logs/provision-audit.log")
    Path(audit_file).parent.mkdir(parents=True, exist_ok=True)

    audit_logger = logging.getLogger("audit")
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    audit_logger.handlers.clear()
    handler = logging.FileHandler(audit_file)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    return audit_logger


def _redacted_value(value) -> dict:
    if value is None:
        return {"redacted": True, "bytes": 0}
    if isinstance(value, str):
        raw = value.encode("utf-8", errors="replace")
    else:
        raw = str(value).encode("utf-8", errors="replace")
    return {
        "redacted": True,
        "bytes": len(raw),
        "sha256": hashlib.sha256(raw).hexdigest(),
    }


def sanitize_for_audit(obj):
    if isinstance(obj, dict):
        cleaned = {}
        for k, v in obj.items():
            if str(k).lower() in AUDIT_REDACTED_FIELDS:
                cleaned[k] = _redacted_value(v)
            else:
                cleaned[k] = sanitize_for_audit(v)
        return cleaned
    if isinstance(obj, list):
        return [sanitize_for_audit(v) for v in obj]
    return obj


def emit_audit(
    audit_logger: Optional[logging.Logger],
    action: str,
    actor: str,
    *,
    target_type: str,
    target_id,
    detail: Optional[dict] = None,
) -> None:
    if audit_logger is None:
        return
    event = {
        "ts": int(time.time()),
        "action": action,
        "actor": actor,
        "target_type": target_type,
        "target_id": target_id,
        "detail": sanitize_for_audit(detail or {}),
    }
    try:
        audit_logger.info(json.dumps(event, ensure_ascii=False, sort_keys=True))
    except Exception:  # noqa: BLE001
        logger.exception("Failed to write audit record for %s", action)
