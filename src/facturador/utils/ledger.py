"""Local submission ledger keyed by the document's natural key (RUC-TT-SERIE-NUM).

SUNAT rejects a second sendBill for a document it already holds, and a lost
response leaves the outcome unknown. The ledger remembers, per key, whether a
document was never sent, is in flight, or has a stored result.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock

from facturador.models.receipt import SubmissionResult

logger = logging.getLogger(__name__)

UNSENT = "unsent"
SENT = "sent"
ACKNOWLEDGED = "acknowledged"


def _ledger_path(ledger_dir: Path) -> Path:
    return ledger_dir / "submissions.json"


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


@contextmanager
def _locked(ledger_dir: Path) -> Iterator[None]:
    """Hold an exclusive file lock during ledger read-modify-write."""
    lp = _ledger_path(ledger_dir)
    lp.parent.mkdir(parents=True, exist_ok=True)
    with FileLock(lp.with_suffix(".lock")):
        yield


@contextmanager
def submission_lock(key: str, ledger_dir: Path, timeout: float = -1) -> Iterator[None]:
    """Serialize every submission of one natural key across processes."""
    lock_dir = ledger_dir / "locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    with FileLock(lock_dir / f"{key}.lock", timeout=timeout):
        yield


def _load(ledger_dir: Path) -> dict[str, dict[str, Any]]:
    lp = _ledger_path(ledger_dir)
    if not lp.exists():
        return {}
    try:
        data = json.loads(lp.read_text())
    except (json.JSONDecodeError, ValueError):
        _backup_corrupt(lp)
        return {}
    if not isinstance(data, dict):
        _backup_corrupt(lp)
        return {}
    return data


def _save(ledger_dir: Path, entries: dict[str, dict[str, Any]]) -> None:
    lp = _ledger_path(ledger_dir)
    lp.parent.mkdir(parents=True, exist_ok=True)
    tmp = lp.with_suffix(".tmp")
    tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
    os.replace(tmp, lp)


def get_state(key: str, ledger_dir: Path) -> str:
    entry = get_entry(key, ledger_dir)
    return entry["state"] if entry else UNSENT


def get_entry(key: str, ledger_dir: Path) -> dict[str, Any] | None:
    with _locked(ledger_dir):
        return _load(ledger_dir).get(key)


def get_result(key: str, ledger_dir: Path) -> SubmissionResult | None:
    """Return the stored result of an acknowledged key, or None."""
    entry = get_entry(key, ledger_dir)
    if not entry or entry.get("state") != ACKNOWLEDGED or "result" not in entry:
        return None
    return SubmissionResult.from_dict(entry["result"])


def mark_sent(key: str, ledger_dir: Path) -> dict[str, Any]:
    with _locked(ledger_dir):
        entries = _load(ledger_dir)
        entry = {"key": key, "state": SENT, "sent_at": _now()}
        entries[key] = entry
        _save(ledger_dir, entries)
    return entry


def mark_acknowledged(result: SubmissionResult, ledger_dir: Path) -> dict[str, Any]:
    with _locked(ledger_dir):
        entries = _load(ledger_dir)
        entry = entries.get(result.document_key, {"key": result.document_key})
        entry.update(
            state=ACKNOWLEDGED,
            acknowledged_at=_now(),
            result=result.to_dict(),
        )
        entries[result.document_key] = entry
        _save(ledger_dir, entries)
    return entry


def clear_entry(key: str, ledger_dir: Path) -> bool:
    """Return a key to the unsent state. Returns False if it was not tracked."""
    with _locked(ledger_dir):
        entries = _load(ledger_dir)
        if key not in entries:
            return False
        del entries[key]
        _save(ledger_dir, entries)
    return True


def list_entries(ledger_dir: Path, state: str | None = None) -> list[dict[str, Any]]:
    """Return tracked entries, optionally filtered by state, without result payloads."""
    with _locked(ledger_dir):
        entries = _load(ledger_dir)
    out = []
    for entry in entries.values():
        if state and entry.get("state") != state:
            continue
        out.append({k: v for k, v in entry.items() if k != "result"})
    return out
