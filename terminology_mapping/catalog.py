from __future__ import annotations

import io
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
import pandas as pd
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import CatalogLoadError, InvalidRecordError
from .schemas import (
    CodeEntry,
    Direction,
    Mapping,
    is_classification_system,
    is_source_system,
)


logger = structlog.get_logger(__name__)


class CodeCatalog:
    """Read-only collection of coded terms across the supported coding systems."""

    def __init__(self, entries: Iterable[CodeEntry] = ()):
        self.entries: List[CodeEntry] = list(entries)
        self._by_key: Dict[Tuple[str, str], CodeEntry] = {}
        for e in self.entries:
            # First occurrence wins on duplicate system+code
            self._by_key.setdefault((e.system.upper(), e.code.lower()), e)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    # ------------------------ Pools ------------------------
    def source_pool(self) -> List[CodeEntry]:
        return [e for e in self.entries if is_source_system(e.system)]

    def classification_pool(self) -> List[CodeEntry]:
        return [e for e in self.entries if is_classification_system(e.system)]

    def pools(self, direction: Direction) -> Tuple[List[CodeEntry], List[CodeEntry]]:
        if direction == "toClassification":
            return self.source_pool(), self.classification_pool()
        if direction == "toSource":
            return self.classification_pool(), self.source_pool()
        raise ValueError(f"Unknown direction: {direction!r}")

    # ------------------------ Lookup ------------------------
    def find(self, system: str, code: str) -> Optional[CodeEntry]:
        return self._by_key.get((str(system or "").upper(), str(code or "").lower()))

    def exists(self, system: str, code: str) -> bool:
        return self.find(system, code) is not None

    # ------------------------ Derived state ------------------------
    def with_mapped_flags(self, mappings: Iterable[Mapping]) -> "CodeCatalog":
        mapped_keys = {(m.source.system.upper(), m.source.code.lower()) for m in mappings}
        return CodeCatalog(
            CodeEntry(
                code=e.code,
                term=e.term,
                system=e.system,
                mapped=(e.system.upper(), e.code.lower()) in mapped_keys,
            )
            for e in self.entries
        )

    def counts(self) -> Dict[str, Any]:
        by_system: Dict[str, int] = {}
        for e in self.entries:
            by_system[e.system] = by_system.get(e.system, 0) + 1
        mapped = sum(1 for e in self.entries if e.mapped)
        total = len(self.entries)
        return {
            "total": total,
            "by_system": by_system,
            "mapped": mapped,
            "coverage_pct": round(mapped / max(1, total) * 100),
        }


@dataclass
class CatalogLoadResult:
    catalog: CodeCatalog
    source_format: Optional[str] = None  # "json" | "csv" | None when nothing loaded
    skipped_rows: int = 0
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


# ------------------------ Fetch ------------------------
def _is_url(location: str) -> bool:
    return location.startswith("http://") or location.startswith("https://")


def _fetch_text(url: str, timeout: float, attempts: int) -> str:
    @retry(
        reraise=True,
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type((httpx.TransportError,)),
    )
    def _get() -> httpx.Response:
        return httpx.get(url, timeout=timeout, follow_redirects=True, headers={"Cache-Control": "no-store"})

    try:
        response = _get()
    except httpx.HTTPError as e:
        raise CatalogLoadError(f"Failed to fetch {url}: {e}")
    if response.status_code != 200:
        raise CatalogLoadError(f"Failed to fetch {url}: HTTP {response.status_code}")
    return response.text


def read_location(location: str, timeout: float = 15.0, attempts: int = 3) -> str:
    if _is_url(location):
        return _fetch_text(location, timeout, attempts)
    if not os.path.exists(location):
        raise CatalogLoadError(f"Dataset not found: {location}")
    try:
        with open(location, encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise CatalogLoadError(f"Failed to read {location}: {e}")


# ------------------------ Parse ------------------------
def entries_from_records(records: Sequence[Any]) -> Tuple[List[CodeEntry], int]:
    entries: List[CodeEntry] = []
    skipped = 0
    for raw in records:
        try:
            entries.append(CodeEntry.from_dict(raw))
        except InvalidRecordError as e:
            skipped += 1
            logger.debug("Skipping catalog record", reason=e.reason)
    return entries, skipped


def parse_json_dataset(text: str) -> Tuple[List[CodeEntry], int]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CatalogLoadError(f"Dataset is not valid JSON: {e}")
    if isinstance(data, dict):
        data = data.get("codes")
    if not isinstance(data, list):
        raise CatalogLoadError("Dataset JSON must be a list or an object with a 'codes' list.")
    return entries_from_records(data)


def parse_csv_dataset(text: str) -> Tuple[List[CodeEntry], int]:
    if not text.strip():
        raise CatalogLoadError("Delimited dataset is empty.")
    try:
        df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False, skipinitialspace=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise CatalogLoadError(f"Delimited dataset could not be parsed: {e}")
    df.columns = [str(c).strip().lower() for c in df.columns]
    missing = {"code", "system"} - set(df.columns)
    if missing:
        raise CatalogLoadError(f"Delimited dataset is missing columns: {sorted(missing)}")
    return entries_from_records(df.to_dict(orient="records"))


def load_catalog(
    json_location: Optional[str],
    csv_location: Optional[str] = None,
    timeout: float = 15.0,
    attempts: int = 3,
) -> CatalogLoadResult:
    """Load the code dataset, falling back from JSON to delimited text.

    Never raises for load problems: when neither source can be read the
    result carries an empty catalog and an ``error`` banner.
    """
    problems: List[str] = []
    sources = [("json", json_location, parse_json_dataset), ("csv", csv_location, parse_csv_dataset)]
    for fmt, location, parse in sources:
        if not location:
            continue
        try:
            entries, skipped = parse(read_location(location, timeout=timeout, attempts=attempts))
        except CatalogLoadError as e:
            logger.warning("Catalog source unavailable", dataset_format=fmt, location=location, error=str(e))
            problems.append(str(e))
            continue
        logger.info("Catalog loaded", dataset_format=fmt, location=location, entries=len(entries), skipped=skipped)
        return CatalogLoadResult(
            catalog=CodeCatalog(entries),
            source_format=fmt,
            skipped_rows=skipped,
            warnings=problems,
        )

    message = "; ".join(problems) if problems else "No dataset location configured"
    logger.error("Catalog load failed; continuing with empty catalog", error=message)
    return CatalogLoadResult(catalog=CodeCatalog(), error=f"Failed to load code datasets: {message}")
