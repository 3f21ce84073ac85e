"""Candidate matching and mapping approval for NAMASTE ⇄ ICD-11 terminology.

Modules:
- schemas: dataclass records (codes, mappings, candidates, suggestions)
- catalog: load the code dataset (JSON with delimited-text fallback)
- scorer: fixed-weight lexical similarity between two codes
- candidates: rank destination codes for a search query
- storage: key/value persistence port with change notifications
- mapping_store: ledger of approved mappings
- prefill: single-use handoff to the record builder
- llm_client / prompt_builder / suggestions: AI-assisted suggestions
- request_gate: last-request-wins tracking and debouncing
- fhir: Condition / Bundle assembly and the bundle draft
- audit: activity log
- cli: command line entry point
"""

__all__ = [
    "schemas",
    "catalog",
    "scorer",
    "candidates",
    "storage",
    "mapping_store",
    "prefill",
    "llm_client",
    "prompt_builder",
    "suggestions",
    "request_gate",
    "fhir",
    "audit",
    "cli",
]
