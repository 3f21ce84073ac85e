from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import List, Literal, Optional, Dict, Any

from .errors import InvalidRecordError


NAMASTE = "NAMASTE"
TM2 = "TM2"
BIO = "BIO"
ICD11 = "ICD-11"

Direction = Literal["toClassification", "toSource"]

AI_SUGGESTION_TERM = "(AI suggestion)"


def is_source_system(system: str) -> bool:
    return (system or "").upper() == NAMASTE


def is_classification_system(system: str) -> bool:
    sys = (system or "").upper()
    return sys in (ICD11, TM2) or sys.startswith(BIO)


def _as_text(value: Any) -> str:
    # pandas hands missing cells over as float NaN
    if value is None or (isinstance(value, float) and value != value):
        return ""
    return str(value).strip()


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _as_text(value).lower() == "true"


@dataclass
class CodeEntry:
    code: str
    term: str
    system: str
    mapped: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeEntry":
        if not isinstance(data, dict):
            raise InvalidRecordError(data, "not an object")
        code = _as_text(data.get("code"))
        system = _as_text(data.get("system"))
        if not code:
            raise InvalidRecordError(data, "missing code")
        if not system:
            raise InvalidRecordError(data, "missing system")
        return cls(
            code=code,
            term=_as_text(data.get("term")),
            system=system,
            mapped=_as_flag(data.get("mapped")),
        )

    @property
    def key(self) -> str:
        return f"{self.system}:{self.code}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CodeRef:
    """Snapshot of a code at approval time; the term is not kept in sync with the catalog."""

    system: str
    code: str
    term: str

    @classmethod
    def of(cls, entry: "CodeEntry | CodeRef") -> "CodeRef":
        return cls(system=entry.system, code=entry.code, term=entry.term)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeRef":
        if not isinstance(data, dict):
            raise InvalidRecordError(data, "not an object")
        system = _as_text(data.get("system"))
        code = _as_text(data.get("code"))
        if not code:
            raise InvalidRecordError(data, "missing code")
        if not system:
            raise InvalidRecordError(data, "missing system")
        return cls(system=system, code=code, term=_as_text(data.get("term")))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def mapping_id(source: "CodeEntry | CodeRef", dest: "CodeEntry | CodeRef") -> str:
    return f"{source.system}:{source.code}__{dest.system}:{dest.code}"


@dataclass
class Mapping:
    id: str
    from_system: str
    source: CodeRef
    dest: CodeRef
    score: float
    created_at: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Mapping":
        if not isinstance(data, dict):
            raise InvalidRecordError(data, "not an object")
        try:
            source = CodeRef.from_dict(data["source"])
            dest = CodeRef.from_dict(data["dest"])
            score = float(data.get("score", 0.0))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRecordError(data, str(e))
        # id is always derived from the refs, never taken from the stored record
        return cls(
            id=mapping_id(source, dest),
            from_system=_as_text(data.get("fromSystem")),
            source=source,
            dest=dest,
            score=score,
            created_at=_as_text(data.get("createdAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        # Persisted field names match the exported document
        return {
            "id": self.id,
            "fromSystem": self.from_system,
            "source": self.source.to_dict(),
            "dest": self.dest.to_dict(),
            "score": self.score,
            "createdAt": self.created_at,
        }


@dataclass
class Candidate:
    source: CodeEntry
    dest: CodeEntry
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CandidateGroup:
    source: CodeEntry
    candidates: List[Candidate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SuggestionGroup:
    system: str
    candidates: List[CodeEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SuggestionResult:
    query: str
    direction: Direction
    groups: List[SuggestionGroup] = field(default_factory=list)
    # Set when the service failed; None means the call succeeded (possibly with no suggestions)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PrefillPayload:
    namaste: str = ""
    tm2: str = ""
    biomed: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrefillPayload":
        if not isinstance(data, dict):
            raise InvalidRecordError(data, "not an object")
        return cls(
            namaste=_as_text(data.get("namaste")),
            tm2=_as_text(data.get("tm2")),
            biomed=_as_text(data.get("biomed")),
        )

    def is_empty(self) -> bool:
        return not (self.namaste or self.tm2 or self.biomed)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditEvent:
    timestamp: str
    user: str
    action: str
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ImportSummary:
    added: int = 0
    skipped: int = 0
    prefill: Optional[PrefillPayload] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
