"""
False-positive exclusion store.

The scorer only needs a read contract: ``is_excluded(key) -> bool``.
Holders persist analyst marks outside one run's lifetime; the SQLite holder
keys marks by report id and finding key so they survive across processes.
Marks are only ever added or removed by the holder, never by the scorer.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Union, runtime_checkable

from ..indicators.base import FindingKey

logger = logging.getLogger("m365_identity_risk.exclusions")

KeyLike = Union[FindingKey, str]


def _key_text(key: KeyLike) -> str:
    if isinstance(key, FindingKey):
        return str(key)
    return str(FindingKey.parse(key))


@runtime_checkable
class ExclusionLookup(Protocol):
    def is_excluded(self, key: KeyLike) -> bool:
        ...


ExclusionInput = Union[
    ExclusionLookup, Callable[[str], Any], Iterable[KeyLike], Mapping[str, Any], None
]


@dataclass(frozen=True)
class FalsePositiveMark:
    finding_key: str
    marked_at: str
    report_id: Optional[str] = None
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "finding_key": self.finding_key,
            "marked_at": self.marked_at,
            "report_id": self.report_id,
            "note": self.note,
        }


class InMemoryExclusions:
    """Immutable set of excluded keys."""

    def __init__(self, keys: Iterable[KeyLike] = ()):
        self._keys = frozenset(_key_text(k) for k in keys)

    def is_excluded(self, key: KeyLike) -> bool:
        return _key_text(key) in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self):
        return iter(sorted(self._keys))


NO_EXCLUSIONS = InMemoryExclusions()


class CallableExclusions:
    """Adapts a plain ``key -> marked`` function to the lookup contract."""

    def __init__(self, func: Callable[[str], Any]):
        self._func = func

    def is_excluded(self, key: KeyLike) -> bool:
        return bool(self._func(_key_text(key)))


def as_exclusion_lookup(exclusions: ExclusionInput) -> ExclusionLookup:
    """
    Adapt the accepted exclusion forms to the lookup contract:
    None, a lookup object, a ``key -> marked`` function, a mapping of
    key -> truthy marked flag, or an iterable of keys (FindingKey or
    "<indicator_id>|<entity_scope>").
    """
    if exclusions is None:
        return NO_EXCLUSIONS
    if isinstance(exclusions, ExclusionLookup):
        return exclusions
    if callable(exclusions):
        return CallableExclusions(exclusions)
    if isinstance(exclusions, Mapping):
        return InMemoryExclusions(k for k, marked in exclusions.items() if marked)
    if isinstance(exclusions, (str, FindingKey)):
        return InMemoryExclusions([exclusions])
    return InMemoryExclusions(exclusions)


class SQLiteExclusionStore:
    """
    Persistent false-positive marks backed by SQLite.
    Connection-per-call, so one store can be shared freely.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS false_positive_marks (
                    report_id TEXT NOT NULL,
                    finding_key TEXT NOT NULL,
                    marked_at TEXT NOT NULL,
                    note TEXT DEFAULT '',
                    PRIMARY KEY (report_id, finding_key)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_marks_report
                ON false_positive_marks(report_id)
            """)
            conn.commit()

    def mark(self, report_id: str, key: KeyLike, note: str = "") -> FalsePositiveMark:
        """Mark a finding as false positive for one report (idempotent)."""
        mark = FalsePositiveMark(
            finding_key=_key_text(key),
            marked_at=datetime.now(timezone.utc).isoformat(),
            report_id=report_id,
            note=note,
        )
        with sqlite3.connect(str(self.db_path)) as conn:
            existing = conn.execute(
                "SELECT marked_at, note FROM false_positive_marks "
                "WHERE report_id = ? AND finding_key = ?",
                (report_id, mark.finding_key),
            ).fetchone()
            if existing:
                return FalsePositiveMark(mark.finding_key, existing[0], report_id, existing[1])
            conn.execute(
                """
                INSERT INTO false_positive_marks (report_id, finding_key, marked_at, note)
                VALUES (?, ?, ?, ?)
                """,
                (report_id, mark.finding_key, mark.marked_at, note),
            )
            conn.commit()
        logger.info(f"Marked {mark.finding_key} as false positive in report {report_id}")
        return mark

    def unmark(self, report_id: str, key: KeyLike) -> bool:
        with sqlite3.connect(str(self.db_path)) as conn:
            deleted = conn.execute(
                "DELETE FROM false_positive_marks WHERE report_id = ? AND finding_key = ?",
                (report_id, _key_text(key)),
            ).rowcount
            conn.commit()
        if deleted:
            logger.info(f"Unmarked {_key_text(key)} in report {report_id}")
        return bool(deleted)

    def marks_for(self, report_id: str) -> list[FalsePositiveMark]:
        with sqlite3.connect(str(self.db_path)) as conn:
            rows = conn.execute(
                """
                SELECT finding_key, marked_at, note FROM false_positive_marks
                WHERE report_id = ? ORDER BY finding_key
                """,
                (report_id,),
            ).fetchall()
        return [FalsePositiveMark(r[0], r[1], report_id, r[2] or "") for r in rows]

    def lookup_for(self, report_id: str) -> InMemoryExclusions:
        """Snapshot of one report's marks for the scorer."""
        return InMemoryExclusions(m.finding_key for m in self.marks_for(report_id))
