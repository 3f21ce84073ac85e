import json

import pytest

from terminology_mapping.mapping_store import MappingStore
from terminology_mapping.schemas import CodeEntry, Mapping
from terminology_mapping.storage import MAPPINGS_KEY, MemoryStorage


SRC = CodeEntry(code="A01", term="Fever", system="SRC")
DST = CodeEntry(code="R50.9", term="Fever unspecified", system="DST")
OTHER = CodeEntry(code="SM01", term="Fever disorder", system="TM2")


@pytest.fixture
def store(storage, clock):
    return MappingStore(storage, clock=clock)


def test_approve_builds_deterministic_record(store):
    rec = store.approve(SRC, DST, "SRC", 0.30004)

    assert rec.id == "SRC:A01__DST:R50.9"
    assert rec.from_system == "SRC"
    assert rec.score == 0.3
    assert rec.source.term == "Fever"
    assert rec.created_at == "2025-01-31T09:05:00.000Z"
    assert store.list() == [rec]


def test_reapproving_same_pair_replaces_record(store):
    store.approve(SRC, DST, "SRC", 0.3)
    store.approve(SRC, OTHER, "SRC", 0.4)
    second = store.approve(SRC, DST, "SRC", 0.9)

    listed = store.list()
    assert len([m for m in listed if m.id == second.id]) == 1
    assert listed[0] == second
    assert listed[0].score == 0.9
    assert listed[0].created_at == "2025-01-31T09:05:02.000Z"
    assert len(listed) == 2


def test_approve_same_pair_twice_leaves_one_record(store):
    store.approve(SRC, DST, "SRC", 0.3)
    store.approve(SRC, DST, "SRC", 0.75)
    assert len(store.list()) == 1
    assert store.list()[0].score == 0.75


def test_list_is_most_recent_first(store):
    first = store.approve(SRC, DST, "SRC", 0.3)
    second = store.approve(SRC, OTHER, "SRC", 0.4)
    assert [m.id for m in store.list()] == [second.id, first.id]


def test_remove_and_remove_missing(store):
    rec = store.approve(SRC, DST, "SRC", 0.3)
    before = store.list()

    assert store.remove("nope") is False
    assert store.list() == before

    assert store.remove(rec.id) is True
    assert store.list() == []
    assert store.remove(rec.id) is False
    assert store.list() == []


def test_snapshot_terms_are_frozen(store):
    dest = CodeEntry(code="R50.9", term="Fever unspecified", system="DST")
    store.approve(SRC, dest, "SRC", 0.3)
    dest.term = "Renamed"
    assert store.list()[0].dest.term == "Fever unspecified"


def test_every_mutation_is_persisted(storage, clock):
    store = MappingStore(storage, clock=clock)
    store.approve(SRC, DST, "SRC", 0.3)

    reopened = MappingStore(storage, clock=clock)
    assert [m.id for m in reopened.list()] == ["SRC:A01__DST:R50.9"]
    assert json.loads(storage.get(MAPPINGS_KEY))[0]["fromSystem"] == "SRC"


def test_reads_follow_external_writes(storage, clock):
    store = MappingStore(storage, clock=clock)
    other_view = MappingStore(storage, clock=clock)
    store.approve(SRC, DST, "SRC", 0.3)
    other_view.remove("SRC:A01__DST:R50.9")
    assert store.list() == []


def test_export_round_trip(store):
    store.approve(SRC, DST, "SRC", 0.3)
    store.approve(SRC, OTHER, "SRC", 0.4)

    document = store.export_all()
    assert document.startswith("[\n  {")
    restored = [Mapping.from_dict(d) for d in json.loads(document)]
    assert restored == store.list()


@pytest.mark.parametrize("raw", ["{not json", '{"a": 1}', "42", ""])
def test_corrupt_state_reads_as_empty(clock, raw):
    store = MappingStore(MemoryStorage({MAPPINGS_KEY: raw}), clock=clock)
    assert store.list() == []


def test_unreadable_records_are_dropped(clock):
    good = {
        "id": "SRC:A01__DST:R50.9",
        "fromSystem": "SRC",
        "source": {"system": "SRC", "code": "A01", "term": "Fever"},
        "dest": {"system": "DST", "code": "R50.9", "term": "Fever unspecified"},
        "score": 0.3,
        "createdAt": "2025-01-31T09:05:00.000Z",
    }
    empty_refs = {"id": "x", "source": {}, "dest": {"term": "t"}, "score": 0.5}
    missing_system = dict(good, source={"code": "A01", "term": "Fever"})
    storage = MemoryStorage(
        {MAPPINGS_KEY: json.dumps([good, {"id": "broken"}, "junk", empty_refs, missing_system])}
    )
    assert [m.id for m in MappingStore(storage, clock=clock).list()] == [good["id"]]


def test_stored_id_is_rebuilt_from_refs(clock):
    record = {
        "id": "stale-id",
        "fromSystem": "SRC",
        "source": {"system": "SRC", "code": "A01", "term": "Fever"},
        "dest": {"system": "DST", "code": "R50.9", "term": "Fever unspecified"},
        "score": 0.3,
        "createdAt": "2025-01-31T09:05:00.000Z",
    }
    duplicate = dict(record, id="SRC:A01__DST:R50.9", score=0.9)
    store = MappingStore(MemoryStorage({MAPPINGS_KEY: json.dumps([record, duplicate])}), clock=clock)

    listed = store.list()

    assert [(m.id, m.score) for m in listed] == [("SRC:A01__DST:R50.9", 0.3)]
    assert store.get("stale-id") is None
    assert store.remove("SRC:A01__DST:R50.9") is True
    assert store.list() == []


def test_subscribers_notified_on_change(store):
    calls = []
    unsubscribe = store.subscribe(lambda: calls.append(len(store.list())))

    rec = store.approve(SRC, DST, "SRC", 0.3)
    store.remove("missing")
    store.remove(rec.id)
    unsubscribe()
    store.approve(SRC, DST, "SRC", 0.3)

    assert calls == [1, 0]


class FailingStorage(MemoryStorage):
    def set(self, key, value):
        raise OSError("quota exceeded")


def test_write_failures_propagate(clock):
    store = MappingStore(FailingStorage(), clock=clock)
    with pytest.raises(OSError, match="quota exceeded"):
        store.approve(SRC, DST, "SRC", 0.3)
    assert store.list() == []


def test_import_rows_adds_namaste_pairs_once(store):
    rows = [
        {"namaste_code": "NAM1", "icd11_tm2": "SM01", "biomed": "R50.9"},
        {"namaste_code": "NAM2", "icd11_tm2": "", "biomed": "8A80"},
        {"namaste_code": "", "icd11_tm2": "", "biomed": ""},
        {"namaste_code": "NAM1", "icd11_tm2": "SM01", "biomed": ""},
    ]

    summary = store.import_rows(rows)

    assert summary.added == 3
    assert summary.skipped == 1
    assert summary.prefill.to_dict() == {"namaste": "NAM1", "tm2": "SM01", "biomed": "R50.9"}
    ids = [m.id for m in store.list()]
    assert ids == [
        "NAMASTE:NAM2__BIO:8A80",
        "NAMASTE:NAM1__BIO:R50.9",
        "NAMASTE:NAM1__TM2:SM01",
    ]
    assert all(m.score == 1.0 and m.source.term == "—" for m in store.list())

    again = store.import_rows(rows)
    assert again.added == 0
    assert len(store.list()) == 3


def test_import_and_export_csv(store, tmp_path):
    sheet = tmp_path / "mappings.csv"
    sheet.write_text("namaste,tm2,biomed\nNAM1,SM01,R50.9\n", encoding="utf-8")

    summary = store.import_csv(str(sheet))
    assert summary.added == 2

    out = tmp_path / "out.csv"
    assert store.export_csv(str(out)) == 2
    header = out.read_text(encoding="utf-8").splitlines()[0]
    assert header.startswith("id,from_system,source_system,source_code")


def test_import_csv_requires_namaste_column(store, tmp_path):
    sheet = tmp_path / "bad.csv"
    sheet.write_text("code,term\nA,B\n", encoding="utf-8")
    with pytest.raises(ValueError):
        store.import_csv(str(sheet))
