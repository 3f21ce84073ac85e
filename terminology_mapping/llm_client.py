from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

import structlog
from openai import AsyncOpenAI, BadRequestError

from .errors import LlmError


logger = structlog.get_logger(__name__)

_OBJECT_SPAN = re.compile(r"\{[\s\S]*\}")


def parse_json_lenient(raw: Optional[str]) -> Dict[str, Any]:
    """Best-effort JSON object from model output.

    Strict parse first; otherwise salvage the last balanced-looking ``{...}``
    block in the text; otherwise an empty dict. Never raises.
    """
    text = (raw or "").strip()
    if not text:
        return {}
    try:
        obj = json.loads(text)
        return obj if isinstance(obj, dict) else {}
    except json.JSONDecodeError:
        pass

    match = _OBJECT_SPAN.search(text)
    if match is None:
        return {}
    span = match.group(0)
    try:
        obj = json.loads(span)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError:
        pass

    # Prose with stray braces before the payload: anchor on the last closing
    # brace and widen the window from the right until a block parses
    end = text.rfind("}")
    start = text.rfind("{", 0, end)
    while start != -1:
        try:
            obj = json.loads(text[start : end + 1])
            if isinstance(obj, dict):
                return obj
        except json.JSONDecodeError:
            pass
        start = text.rfind("{", 0, start)
    logger.debug("No JSON object could be salvaged", preview=text[:80])
    return {}


class LlmClient:
    """Thin async wrapper over chat completions for text and JSON answers."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        temperature: float = 0.0,
        timeout: int = 60,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.client = client if client is not None else AsyncOpenAI(timeout=timeout)
        self.model = model
        self.temperature = temperature

    async def _complete(self, messages: List[Dict[str, Any]], response_format: Optional[Dict] = None) -> str:
        kwargs: Dict[str, Any] = {}
        if response_format is not None:
            kwargs["response_format"] = response_format
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            messages=messages,
            **kwargs,
        )
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise LlmError(f"No content in response: {e}")

    async def complete_text(self, prompt: str) -> str:
        try:
            return await self._complete([{"role": "user", "content": prompt}])
        except LlmError:
            raise
        except Exception as e:
            raise LlmError(f"LLM request failed: {e}")

    async def complete_json(self, system: str, user: str, json_schema: Optional[Dict] = None) -> str:
        """Raw response text for a JSON-mode request; parsing is left to the caller."""
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        try:
            return await self._complete(
                messages,
                response_format=(
                    {"type": "json_schema", "json_schema": json_schema}
                    if json_schema is not None
                    else {"type": "json_object"}
                ),
            )
        except LlmError:
            raise
        except BadRequestError as e1:
            # Model does not accept response_format; ask once more in plain mode
            logger.info("JSON mode rejected; falling back to plain completion", error=str(e1))
        except Exception as e:
            raise LlmError(f"LLM request failed: {e}")
        try:
            return await self._complete(
                messages
                + [
                    {
                        "role": "system",
                        "content": "Return only a valid JSON object with double-quoted keys and strings.",
                    }
                ],
            )
        except LlmError:
            raise
        except Exception as e2:
            raise LlmError(f"LLM request failed: {e2}")
