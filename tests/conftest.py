from datetime import datetime, timedelta, timezone

import pytest

from terminology_mapping.catalog import CodeCatalog
from terminology_mapping.errors import LlmError
from terminology_mapping.schemas import CodeEntry
from terminology_mapping.storage import MemoryStorage


class FakeClock:
    def __init__(self, start=datetime(2025, 1, 31, 9, 5, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


class FakeLlmClient:
    """Scripted stand-in for LlmClient; records every prompt it receives."""

    def __init__(self, json_response="{}", text_response="", error=None):
        self.json_response = json_response
        self.text_response = text_response
        self.error = error
        self.json_calls = []
        self.text_calls = []

    async def complete_json(self, system, user, json_schema=None):
        self.json_calls.append((system, user, json_schema))
        if self.error is not None:
            raise LlmError(self.error)
        return self.json_response

    async def complete_text(self, prompt):
        self.text_calls.append(prompt)
        if self.error is not None:
            raise LlmError(self.error)
        return self.text_response


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def entries():
    return [
        CodeEntry(code="A01", term="Fever", system="NAMASTE"),
        CodeEntry(code="A02", term="Jvara with headache", system="NAMASTE"),
        CodeEntry(code="B10", term="Shiroroga (headache disorder)", system="NAMASTE"),
        CodeEntry(code="R50.9", term="Fever unspecified", system="BIO"),
        CodeEntry(code="SM01", term="Fever disorder (TM2)", system="TM2"),
        CodeEntry(code="8A80", term="Migraine", system="ICD-11"),
        CodeEntry(code="8A81", term="Tension-type headache", system="ICD-11"),
    ]


@pytest.fixture
def catalog(entries):
    return CodeCatalog(entries)
