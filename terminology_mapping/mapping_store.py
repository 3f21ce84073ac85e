from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd
import structlog

from .errors import InvalidRecordError
from .schemas import (
    BIO,
    NAMASTE,
    TM2,
    CodeEntry,
    CodeRef,
    ImportSummary,
    Mapping,
    PrefillPayload,
    mapping_id,
)
from .storage import MAPPINGS_KEY, KeyValueStorage, Unsubscribe, read_json_list, write_json


logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

IMPORTED_TERM = "—"

# Accepted column spellings for mapping sheets, first match wins
_NAMASTE_COLUMNS = ("namaste", "namaste_code")
_TM2_COLUMNS = ("tm2", "tm2_code", "icd11_tm2")
_BIOMED_COLUMNS = ("biomed", "biomed_code", "icd11_biomed")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _pick_column(columns: Iterable[str], names: Iterable[str]) -> Optional[str]:
    lowered = {str(c).strip().lower(): c for c in columns}
    for name in names:
        if name in lowered:
            return lowered[name]
    return None


def _cell(row: Dict[str, Any], column: Optional[str]) -> str:
    if column is None:
        return ""
    value = row.get(column)
    if value is None or (isinstance(value, float) and value != value):
        return ""
    return str(value).strip()


class MappingStore:
    """Ledger of approved source→destination mappings.

    Storage is the only source of truth: every read parses the persisted list
    and every mutation writes the full list back before returning. Storage
    write errors propagate so a failed approval is never silently lost.
    """

    def __init__(self, storage: KeyValueStorage, clock: Clock = utc_now, key: str = MAPPINGS_KEY):
        self.storage = storage
        self.clock = clock
        self.key = key

    # ------------------------ Read ------------------------
    def list(self) -> List[Mapping]:
        out: List[Mapping] = []
        seen = set()
        for raw in read_json_list(self.storage, self.key):
            try:
                rec = Mapping.from_dict(raw)
            except InvalidRecordError as e:
                logger.warning("Dropping unreadable mapping record", reason=e.reason)
                continue
            # Newest copy wins when two stored records resolve to the same id
            if rec.id in seen:
                continue
            seen.add(rec.id)
            out.append(rec)
        return out

    def get(self, mapping_id_: str) -> Optional[Mapping]:
        return next((m for m in self.list() if m.id == mapping_id_), None)

    def __len__(self) -> int:
        return len(self.list())

    # ------------------------ Mutations ------------------------
    def _save(self, mappings: List[Mapping]) -> None:
        write_json(self.storage, self.key, [m.to_dict() for m in mappings])

    def approve(
        self,
        source: "CodeEntry | CodeRef",
        dest: "CodeEntry | CodeRef",
        from_system: str,
        score: float,
    ) -> Mapping:
        rec = Mapping(
            id=mapping_id(source, dest),
            from_system=from_system,
            source=CodeRef.of(source),
            dest=CodeRef.of(dest),
            score=round(float(score), 3),
            created_at=format_timestamp(self.clock()),
        )
        without = [m for m in self.list() if m.id != rec.id]
        self._save([rec] + without)
        logger.info("Mapping approved", mapping_id=rec.id, score=rec.score)
        return rec

    def remove(self, mapping_id_: str) -> bool:
        """Drop the record with this id; returns False when there was none."""
        current = self.list()
        remaining = [m for m in current if m.id != mapping_id_]
        if len(remaining) == len(current):
            return False
        self._save(remaining)
        logger.info("Mapping removed", mapping_id=mapping_id_)
        return True

    def subscribe(self, handler: Callable[[], None]) -> Unsubscribe:
        """Call ``handler`` whenever the persisted collection changes; handlers re-read."""

        def on_change(key: str) -> None:
            if key == self.key:
                handler()

        return self.storage.subscribe(on_change)

    # ------------------------ Export / import ------------------------
    def export_all(self) -> str:
        return json.dumps([m.to_dict() for m in self.list()], indent=2, ensure_ascii=False)

    def export_csv(self, path: str) -> int:
        rows = []
        for m in self.list():
            rows.append(
                {
                    "id": m.id,
                    "from_system": m.from_system,
                    "source_system": m.source.system,
                    "source_code": m.source.code,
                    "source_term": m.source.term,
                    "dest_system": m.dest.system,
                    "dest_code": m.dest.code,
                    "dest_term": m.dest.term,
                    "score": m.score,
                    "created_at": m.created_at,
                }
            )
        pd.DataFrame(rows).to_csv(path, index=False)
        return len(rows)

    def import_rows(self, rows: List[Dict[str, Any]]) -> ImportSummary:
        """Add NAMASTE→TM2 and NAMASTE→BIO mappings from a mapping sheet.

        Pairs already present are left untouched. The first row carrying any
        code becomes the suggested prefill for the record builder.
        """
        summary = ImportSummary()
        if not rows:
            return summary
        columns = list(rows[0].keys())
        namaste_col = _pick_column(columns, _NAMASTE_COLUMNS)
        tm2_col = _pick_column(columns, _TM2_COLUMNS)
        biomed_col = _pick_column(columns, _BIOMED_COLUMNS)

        existing = self.list()
        seen = {m.id for m in existing}
        created_at = format_timestamp(self.clock())
        added: List[Mapping] = []

        def push_once(source: CodeRef, dest: CodeRef) -> None:
            rec_id = mapping_id(source, dest)
            if rec_id in seen:
                summary.skipped += 1
                return
            seen.add(rec_id)
            added.append(
                Mapping(
                    id=rec_id,
                    from_system=NAMASTE,
                    source=source,
                    dest=dest,
                    score=1.0,
                    created_at=created_at,
                )
            )

        for row in rows:
            namaste = _cell(row, namaste_col)
            tm2 = _cell(row, tm2_col)
            biomed = _cell(row, biomed_col)
            if not (namaste or tm2 or biomed):
                continue
            if namaste and tm2:
                push_once(CodeRef(NAMASTE, namaste, IMPORTED_TERM), CodeRef(TM2, tm2, IMPORTED_TERM))
            if namaste and biomed:
                push_once(CodeRef(NAMASTE, namaste, IMPORTED_TERM), CodeRef(BIO, biomed, IMPORTED_TERM))
            if summary.prefill is None:
                summary.prefill = PrefillPayload(namaste=namaste, tm2=tm2, biomed=biomed)

        if added:
            # Each new record goes to the front, so the last row ends up first
            self._save(list(reversed(added)) + existing)
        summary.added = len(added)
        logger.info("Mapping sheet imported", added=summary.added, skipped=summary.skipped)
        return summary

    def import_csv(self, path: str) -> ImportSummary:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        if _pick_column(df.columns, _NAMASTE_COLUMNS) is None:
            raise ValueError("Mapping sheet must contain a 'namaste' or 'namaste_code' column.")
        return self.import_rows(df.to_dict(orient="records"))
