"""Atomic file writes for records, blobs and the notification outbox.

Every write goes tempfile → fsync → rename so readers never see a
partially-written file: a path either holds a complete document or does
not exist.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Dict, List


def atomic_write_bytes(path: str, data: bytes) -> None:
    """Atomically write *data* to *path*, creating parent directories."""
    dest_dir = os.path.dirname(path) or "."
    os.makedirs(dest_dir, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=dest_dir, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        # Clean up temp file on any failure
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def dumps_record(obj: Any) -> str:
    """Pretty, stable JSON used for everything written to disk."""
    return json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True, allow_nan=False)


def atomic_write_json(path: str, obj: Any) -> None:
    atomic_write_bytes(path, (dumps_record(obj) + "\n").encode("utf-8"))


def export_notifications(
    path: str,
    notifications: List[Dict[str, Any]],
    meta: Dict[str, Any],
) -> None:
    """Atomically append *notifications* to the outbox at *path*.

    Notifications already in the outbox are kept: the delivery layer owns
    removal of the file once it has consumed it.  An unreadable outbox
    raises ``ValueError`` rather than being overwritten.
    """
    pending: List[Dict[str, Any]] = []
    try:
        with open(path, "r", encoding="utf-8") as f:
            existing = json.load(f)
    except FileNotFoundError:
        existing = None
    if existing is not None:
        if not isinstance(existing, dict) or not isinstance(existing.get("notifications"), list):
            raise ValueError(f"outbox {path} has unexpected shape; not overwriting")
        pending = existing["notifications"]
    atomic_write_json(path, {"meta": meta, "notifications": pending + list(notifications)})
