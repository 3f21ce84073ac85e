from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from .schemas import BIO, ICD11, NAMASTE, TM2, CodeEntry, Direction


# Suggestion schema keys per direction, mapped to the catalog system they resolve against
SUGGESTION_KEYS: Dict[str, Dict[str, str]] = {
    "toClassification": {"tm2": TM2, "biomed": BIO, "icd11": ICD11},
    "toSource": {"namaste": NAMASTE},
}

MAX_CODES_PER_KEY = 3

SUPPORT_CONTEXT = (
    "You are the in-app support bot for a health terminology tool.\n"
    "Areas: code browser, Mapping (NAMASTE <-> ICD-11/TM2/BIO), Condition builder, Bundle draft.\n"
    "Storage keys: vs_mappings_v1, vs_fhir_prefill_v1, vs_bundle_draft_v1.\n"
    "Be short, actionable. Use bullets/steps. If JSON is pasted, detect resourceType and summarize key fields."
)


def suggestion_keys(direction: Direction) -> Dict[str, str]:
    try:
        return SUGGESTION_KEYS[direction]
    except KeyError:
        raise ValueError(f"Unknown direction: {direction!r}")


def build_json_schema(direction: Direction) -> Dict:
    keys = suggestion_keys(direction)
    return {
        "name": "code_suggestions",
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                k: {"type": "array", "items": {"type": "string"}, "maxItems": MAX_CODES_PER_KEY}
                for k in keys
            },
            "required": list(keys),
        },
        "strict": True,
    }


def _schema_literal(direction: Direction) -> str:
    return "{" + ", ".join(f'"{k}": string[]' for k in suggestion_keys(direction)) + "}"


def build_suggestion_prompt(query: str, direction: Direction) -> Tuple[str, str]:
    q = query.replace('"', "'").strip()
    system = f"Return ONLY valid JSON. Schema exactly as: {_schema_literal(direction)}"
    if direction == "toClassification":
        user = (
            f'Given NAMASTE term or code "{q}", suggest up to {MAX_CODES_PER_KEY} likely codes for TM2,'
            " Biomed (ICD-11 traditional medicine related), and ICD-11 biomedical."
            " Use only code identifiers (no descriptions)."
        )
    else:
        user = (
            f'Given ICD-11/TM2/Biomed term or code "{q}", suggest up to {MAX_CODES_PER_KEY} likely NAMASTE codes.'
            " Use only code identifiers (no descriptions)."
        )
    return system, user


def build_explain_prompt(entry: CodeEntry) -> str:
    return (
        "Explain in 2-3 tight bullets for a clinician:\n"
        f"System: {entry.system}\n"
        f"Code: {entry.code}\n"
        f"Term: {entry.term}\n"
        "Include: meaning, typical use/indication, any mapping nuance (if relevant)."
    )


def build_support_prompt(question: str, history: Optional[List[Tuple[str, str]]] = None) -> str:
    turns = "\n\n".join(f"{role.upper()}: {content}" for role, content in (history or [])[-8:])
    return (
        f"{SUPPORT_CONTEXT}\n\n"
        f"Conversation so far:\n{turns or '(none)'}\n\n"
        f"USER QUESTION:\n{question.strip()}\n\n"
        "Answer clearly in short bullet points or numbered steps."
        " If the question mentions JSON, identify resourceType and highlight important fields."
    )
