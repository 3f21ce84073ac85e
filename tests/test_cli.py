import json

import pytest

from terminology_mapping import cli
from terminology_mapping.cli import main

from conftest import FakeLlmClient


@pytest.fixture
def run(tmp_path, entries, capsys):
    dataset = tmp_path / "seed.json"
    dataset.write_text(json.dumps({"codes": [e.to_dict() for e in entries]}), encoding="utf-8")
    base = [
        "--data-dir",
        str(tmp_path / "ws"),
        "--catalog-json",
        str(dataset),
        "--catalog-csv",
        str(tmp_path / "missing.csv"),
    ]

    def _run(*argv):
        code = main(base + list(argv))
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    return _run


def test_search_ranks_candidates(run):
    code, out, _ = run("search", "fever")
    assert code == 0
    assert "NAMASTE A01" in out
    assert "R50.9" in out and "30%" in out


def test_search_without_matches(run):
    assert run("search", "zzz")[1].strip() == "No matching source codes."


def test_approve_list_apply_condition(run):
    code, out, _ = run("approve", "NAMASTE:A01", "BIO:R50.9")
    assert code == 0
    assert "NAMASTE:A01__BIO:R50.9" in out and "score=0.3" in out

    records = json.loads(run("list", "--json")[1])
    assert [r["id"] for r in records] == ["NAMASTE:A01__BIO:R50.9"]
    assert records[0]["source"]["term"] == "Fever"

    stats = json.loads(run("stats")[1])
    assert stats["mapped"] == 1

    assert run("apply", "NAMASTE:A01__BIO:R50.9")[0] == 0
    code, out, err = run("condition", "--patient", "Patient/7", "--save-draft")
    condition = json.loads(out)
    assert [c["code"] for c in condition["code"]["coding"]] == ["A01", "R50.9"]
    assert "[valid] Patient Reference" in err

    # Prefill is single use
    code, out, err = run("condition")
    assert "code" not in json.loads(out)
    assert "[warn] Dual Coding" in err

    bundle = json.loads(run("drafts")[1])
    assert len(bundle["entry"]) == 1

    audit_out = run("audit")[1]
    assert "Approve Mapping" in audit_out and "Save Condition" in audit_out


def test_approve_with_explicit_score_and_remove(run):
    run("approve", "NAMASTE:A02", "ICD-11:8A81", "--score", "0.91234")
    records = json.loads(run("list", "--json")[1])
    assert records[0]["score"] == 0.912

    run("remove", "NAMASTE:A02__ICD-11:8A81")
    assert json.loads(run("list", "--json")[1]) == []


def test_apply_unknown_mapping(run):
    code, _, err = run("apply", "NAMASTE:X__BIO:Y")
    assert code == 1
    assert "No mapping" in err


def test_export_and_import(run, tmp_path):
    run("approve", "NAMASTE:A01", "BIO:R50.9")
    out_path = tmp_path / "out.json"
    csv_path = tmp_path / "out.csv"
    code, out, _ = run("export", "--out", str(out_path), "--csv", str(csv_path))
    assert code == 0
    assert len(json.loads(out_path.read_text(encoding="utf-8"))) == 1
    assert csv_path.exists()

    sheet = tmp_path / "sheet.csv"
    sheet.write_text("namaste,tm2,biomed\nA01,SM01,R50.9\n", encoding="utf-8")
    code, out, _ = run("import", str(sheet))
    assert "Imported 1 mappings (1 already present)" in out


def test_missing_catalog_prints_warning(tmp_path, capsys):
    code = main(
        [
            "--data-dir",
            str(tmp_path / "ws"),
            "--catalog-json",
            str(tmp_path / "none.json"),
            "--catalog-csv",
            str(tmp_path / "none.csv"),
            "stats",
        ]
    )
    captured = capsys.readouterr()
    assert code == 0
    assert "Failed to load code datasets" in captured.err
    assert json.loads(captured.out)["total"] == 0


def test_suggest_uses_service(run, monkeypatch):
    fake = FakeLlmClient(json_response='{"tm2": ["SM01"], "biomed": [], "icd11": []}')
    monkeypatch.setattr(cli.Workspace, "llm", lambda self: fake)

    code, out, _ = run("suggest", "fever")

    assert code == 0
    assert "SM01 (Fever disorder (TM2))" in out


def test_suggest_reports_failure(run, monkeypatch):
    monkeypatch.setattr(cli.Workspace, "llm", lambda self: FakeLlmClient(error="quota exceeded"))

    code, _, err = run("suggest", "fever")

    assert code == 2
    assert "AI error: quota exceeded" in err


def test_remove_unknown_mapping_is_reported(run):
    code, out, err = run("remove", "NAMASTE:X__BIO:Y")
    assert code == 1
    assert "No mapping with id NAMASTE:X__BIO:Y" in err
    assert "Removed" not in out
    assert "Remove Mapping" not in run("audit")[1]


def test_condition_from_json_bundle(run, tmp_path):
    imported = {
        "resourceType": "Bundle",
        "type": "collection",
        "entry": [
            {
                "resource": {
                    "resourceType": "Condition",
                    "subject": {"reference": "Patient/55"},
                    "clinicalStatus": {"coding": [{"code": "relapse"}]},
                    "code": {
                        "coding": [
                            {"system": "urn:example:namaste", "code": "B10"},
                            {"system": "urn:example:icd11-biomed", "code": "8A80"},
                        ]
                    },
                }
            }
        ],
    }
    path = tmp_path / "bundle.json"
    path.write_text(json.dumps(imported), encoding="utf-8")

    code, out, _ = run("condition", "--from-json", str(path), "--biomed", "8A81")

    assert code == 0
    condition = json.loads(out)
    assert condition["subject"]["reference"] == "Patient/55"
    assert condition["clinicalStatus"]["coding"][0]["code"] == "relapse"
    assert condition["verificationStatus"]["coding"][0]["code"] == "confirmed"
    assert [c["code"] for c in condition["code"]["coding"]] == ["B10", "8A81"]
    assert "FHIR Import" in run("audit")[1]


def test_condition_from_json_rejects_other_documents(run, tmp_path):
    path = tmp_path / "patient.json"
    path.write_text(json.dumps({"resourceType": "Patient", "id": "1"}), encoding="utf-8")
    code, out, err = run("condition", "--from-json", str(path))
    assert code == 1
    assert out == ""
    assert "neither a Condition nor a Bundle" in err

    path.write_text("{not json", encoding="utf-8")
    assert run("condition", "--from-json", str(path))[0] == 1


def test_drafts_remove_single_entry(run):
    run("condition", "--namaste", "A01", "--save-draft")
    run("condition", "--namaste", "B10", "--save-draft")

    code, out, _ = run("drafts", "--remove", "0")
    assert code == 0
    bundle = json.loads(run("drafts")[1])
    assert [e["resource"]["code"]["coding"][0]["code"] for e in bundle["entry"]] == ["A01"]
    assert "Delete Draft Entry" in run("audit")[1]

    code, _, err = run("drafts", "--remove", "3")
    assert code == 1
    assert "No draft entry at index 3" in err


@pytest.mark.parametrize("ref", ["NAMASTE:", ":A01", "A01"])
def test_approve_rejects_incomplete_refs(run, ref):
    with pytest.raises(SystemExit) as exc:
        run("approve", ref, "BIO:R50.9")
    assert exc.value.code == 2
