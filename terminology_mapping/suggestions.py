from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import structlog

from .catalog import CodeCatalog
from .errors import LlmError
from .llm_client import LlmClient, parse_json_lenient
from .prompt_builder import (
    build_explain_prompt,
    build_json_schema,
    build_suggestion_prompt,
    build_support_prompt,
    suggestion_keys,
)
from .schemas import (
    AI_SUGGESTION_TERM,
    CodeEntry,
    Direction,
    SuggestionGroup,
    SuggestionResult,
)


logger = structlog.get_logger(__name__)


def _error_message(e: Exception) -> str:
    return str(e) or "AI service error"


def resolve_codes(catalog: CodeCatalog, codes: List[Any], system: str, limit: int) -> List[CodeEntry]:
    """Catalog entries for the returned code strings, or stand-ins for unknown codes."""
    out: List[CodeEntry] = []
    for raw in codes[:limit]:
        code = str(raw).strip()
        if not code:
            continue
        entry = catalog.find(system, code)
        if entry is None:
            entry = CodeEntry(code=code, term=AI_SUGGESTION_TERM, system=system, mapped=False)
        out.append(entry)
    return out


def groups_from_response(
    catalog: CodeCatalog,
    obj: Dict[str, Any],
    direction: Direction,
    limit: int,
) -> List[SuggestionGroup]:
    groups: List[SuggestionGroup] = []
    for key, system in suggestion_keys(direction).items():
        values = obj.get(key)
        if not isinstance(values, list):
            values = []
        groups.append(SuggestionGroup(system=system, candidates=resolve_codes(catalog, values, system, limit)))
    return groups


class SuggestionAdapter:
    """Asks the completion service for extra candidates and folds them into catalog shape.

    Service failures come back as ``SuggestionResult.error`` rather than
    exceptions so local candidate approval is never blocked by them.
    """

    def __init__(self, catalog: CodeCatalog, client: LlmClient, max_per_system: int = 6):
        self.catalog = catalog
        self.client = client
        self.max_per_system = max_per_system

    async def suggest(self, query: str, direction: Direction) -> SuggestionResult:
        q = (query or "").strip()
        if not q:
            return SuggestionResult(query=q, direction=direction)

        system_prompt, user_prompt = build_suggestion_prompt(q, direction)
        try:
            raw = await self.client.complete_json(system_prompt, user_prompt, build_json_schema(direction))
        except LlmError as e:
            logger.warning("Suggestion request failed", query=q, direction=direction, error=str(e))
            return SuggestionResult(query=q, direction=direction, error=_error_message(e))

        obj = parse_json_lenient(raw)
        groups = groups_from_response(self.catalog, obj, direction, self.max_per_system)
        logger.info(
            "Suggestions received",
            query=q,
            direction=direction,
            counts={g.system: len(g.candidates) for g in groups},
        )
        return SuggestionResult(query=q, direction=direction, groups=groups)

    async def explain(self, entry: CodeEntry) -> str:
        try:
            return (await self.client.complete_text(build_explain_prompt(entry))).strip()
        except LlmError as e:
            logger.warning("Explain request failed", code=entry.key, error=str(e))
            return f"AI error: {_error_message(e)}"

    async def ask_support(self, question: str, history: Optional[List[Tuple[str, str]]] = None) -> str:
        try:
            return (await self.client.complete_text(build_support_prompt(question, history))).strip()
        except LlmError as e:
            logger.warning("Support request failed", error=str(e))
            return f"AI error: {_error_message(e)}"
