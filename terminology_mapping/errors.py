from __future__ import annotations


class TerminologyError(Exception):
    pass


class InvalidRecordError(TerminologyError):
    def __init__(self, record: object, reason: str):
        super().__init__(f"Invalid record ({reason}): {record!r}")
        self.record = record
        self.reason = reason


class CatalogLoadError(TerminologyError):
    pass


class LlmError(TerminologyError):
    pass
