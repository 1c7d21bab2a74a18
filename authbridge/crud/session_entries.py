# authbridge/crud/session_entries.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..models.session_entry import SessionEntry


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def get_value(db: Session, key: str) -> str | None:
    entry = db.get(SessionEntry, key)
    if not entry:
        return None
    return entry.value


def set_value(db: Session, key: str, value: str) -> SessionEntry:
    """
    Insert or update a single key.
    """
    entry = db.get(SessionEntry, key)
    if entry is None:
        entry = SessionEntry(key=key, value=value, updated_at=_now_iso())
        db.add(entry)
    else:
        entry.value = value
        entry.updated_at = _now_iso()
    db.commit()
    db.refresh(entry)
    return entry


def delete_value(db: Session, key: str) -> bool:
    result = db.execute(delete(SessionEntry).where(SessionEntry.key == key))
    db.commit()
    return bool(result.rowcount)


def list_keys(db: Session) -> list[str]:
    stmt = select(SessionEntry.key).order_by(SessionEntry.key)
    return list(db.execute(stmt).scalars().all())


def clear_entries(db: Session) -> int:
    """
    Remove every stored key and return how many rows were deleted.
    """
    result = db.execute(delete(SessionEntry))
    db.commit()
    return int(result.rowcount or 0)
