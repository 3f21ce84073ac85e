from __future__ import annotations

import json
from typing import Optional

import structlog

from .errors import InvalidRecordError
from .schemas import BIO, NAMASTE, TM2, Mapping, PrefillPayload
from .storage import PREFILL_KEY, KeyValueStorage


logger = structlog.get_logger(__name__)


class PrefillMailbox:
    """Single-use handoff from the mapping flow to the record builder."""

    def __init__(self, storage: KeyValueStorage, key: str = PREFILL_KEY):
        self.storage = storage
        self.key = key

    def put(self, payload: PrefillPayload) -> None:
        self.storage.set(self.key, json.dumps(payload.to_dict(), ensure_ascii=False))

    def take(self) -> Optional[PrefillPayload]:
        raw = self.storage.get(self.key)
        if raw is None:
            return None
        self.storage.remove(self.key)
        try:
            return PrefillPayload.from_dict(json.loads(raw))
        except (json.JSONDecodeError, InvalidRecordError):
            logger.warning("Discarding unreadable prefill payload")
            return None


def prefill_from_mapping(mapping: Mapping, from_system: str) -> PrefillPayload:
    source, dest = mapping.source, mapping.dest
    src_sys = (source.system or "").upper()
    dst_sys = (dest.system or "").upper()

    if from_system.upper() == NAMASTE or src_sys == NAMASTE:
        namaste = source.code
    elif dst_sys == NAMASTE:
        namaste = dest.code
    else:
        namaste = ""

    if dst_sys == TM2:
        tm2 = dest.code
    elif src_sys == TM2:
        tm2 = source.code
    else:
        tm2 = ""

    if dst_sys.startswith(BIO):
        biomed = dest.code
    elif src_sys.startswith(BIO):
        biomed = source.code
    else:
        biomed = ""

    return PrefillPayload(namaste=namaste, tm2=tm2, biomed=biomed)
