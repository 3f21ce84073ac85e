from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .audit import AuditLog
from .candidates import generate
from .catalog import CodeCatalog, load_catalog
from .config import WorkspaceConfig, get_config
from .fhir import (
    DEFAULT_PATIENT_REF,
    BundleDraft,
    build_condition_from_prefill,
    codes_from_condition,
    condition_fields,
    extract_condition,
    make_bundle,
    new_condition_id,
    validate_condition_inputs,
)
from .llm_client import LlmClient
from .logging_setup import configure_logging
from .mapping_store import MappingStore
from .prefill import PrefillMailbox, prefill_from_mapping
from .schemas import NAMASTE, CodeEntry, PrefillPayload
from .scorer import score_pair
from .storage import JsonFileStorage
from .suggestions import SuggestionAdapter


DIRECTIONS = ("toClassification", "toSource")


class Workspace:
    def __init__(self, config: WorkspaceConfig, json_location: Optional[str], csv_location: Optional[str]):
        self.config = config
        self.storage = JsonFileStorage(config.data_dir)
        self.mappings = MappingStore(self.storage)
        self.audit = AuditLog(self.storage)
        self.prefill = PrefillMailbox(self.storage)
        self.drafts = BundleDraft(self.storage)
        self._json_location = json_location
        self._csv_location = csv_location
        self._catalog: Optional[CodeCatalog] = None

    @property
    def catalog(self) -> CodeCatalog:
        if self._catalog is None:
            result = load_catalog(
                self._json_location,
                self._csv_location,
                timeout=self.config.catalog.fetch_timeout,
                attempts=self.config.catalog.fetch_attempts,
            )
            if result.error:
                print(f"Warning: {result.error}", file=sys.stderr)
            self._catalog = result.catalog.with_mapped_flags(self.mappings.list())
        return self._catalog

    def llm(self) -> LlmClient:
        cfg = self.config.llm
        return LlmClient(model=cfg.model, temperature=cfg.temperature, timeout=cfg.timeout)


def _parse_ref(text: str) -> Tuple[str, str]:
    if ":" not in text:
        raise argparse.ArgumentTypeError(f"Expected SYSTEM:CODE, got {text!r}")
    system, code = (part.strip() for part in text.split(":", 1))
    if not system or not code:
        raise argparse.ArgumentTypeError(f"Expected SYSTEM:CODE, got {text!r}")
    return system, code


def _lookup(catalog: CodeCatalog, ref: Tuple[str, str]) -> CodeEntry:
    system, code = ref
    entry = catalog.find(system, code)
    if entry is None:
        # Codes outside the loaded dataset can still be mapped
        entry = CodeEntry(code=code, term="", system=system)
    return entry


def _from_system(direction: str) -> str:
    return NAMASTE if direction == "toClassification" else "ICD-11/TM2/BIO"


# ------------------------ Commands ------------------------
def cmd_search(ws: Workspace, args) -> int:
    source_pool, dest_pool = ws.catalog.pools(args.direction)
    groups = generate(args.query, source_pool, dest_pool)
    if not groups:
        print("No matching source codes.")
        return 0
    for g in groups:
        print(f"{g.source.system} {g.source.code} — {g.source.term}")
        if not g.candidates:
            print("    (no close candidates)")
        for c in g.candidates:
            print(f"    {c.dest.system:<8} {c.dest.code:<12} {round(c.score * 100):>3}%  {c.dest.term}")
    return 0


def cmd_approve(ws: Workspace, args) -> int:
    source = _lookup(ws.catalog, args.source)
    dest = _lookup(ws.catalog, args.dest)
    score = args.score if args.score is not None else score_pair(source, dest)
    rec = ws.mappings.approve(source, dest, _from_system(args.direction), score)
    ws.audit.append(
        "Approve Mapping",
        f"{source.system}:{source.code} → {dest.system}:{dest.code} ({rec.score})",
    )
    print(f"Approved {rec.id} (score={rec.score})")
    return 0


def cmd_remove(ws: Workspace, args) -> int:
    if not ws.mappings.remove(args.id):
        print(f"No mapping with id {args.id}", file=sys.stderr)
        return 1
    ws.audit.append("Remove Mapping", args.id)
    print(f"Removed {args.id}")
    return 0


def cmd_list(ws: Workspace, args) -> int:
    mappings = ws.mappings.list()
    if args.json:
        print(ws.mappings.export_all())
        return 0
    for m in mappings:
        print(
            f"{m.source.system}:{m.source.code} ({m.source.term}) → "
            f"{m.dest.system}:{m.dest.code} ({m.dest.term})  score={m.score}  saved={m.created_at}"
        )
    print(f"Total: {len(mappings)}")
    return 0


def cmd_export(ws: Workspace, args) -> int:
    document = ws.mappings.export_all()
    with open(args.out, "w", encoding="utf-8") as f:
        f.write(document)
    count = len(json.loads(document))
    if args.csv:
        ws.mappings.export_csv(args.csv)
    ws.audit.append("Export Mappings", f"{count} mappings to {args.out}")
    print(f"Wrote {count} mappings to {args.out}{' and ' + args.csv if args.csv else ''}")
    return 0


def cmd_import(ws: Workspace, args) -> int:
    summary = ws.mappings.import_csv(args.path)
    if summary.prefill is not None and not summary.prefill.is_empty():
        ws.prefill.put(summary.prefill)
    ws.audit.append("CSV Ingestion", f"Imported {summary.added} mapping rows from {args.path}", user="System")
    print(f"Imported {summary.added} mappings ({summary.skipped} already present)")
    return 0


def cmd_apply(ws: Workspace, args) -> int:
    mapping = ws.mappings.get(args.id)
    if mapping is None:
        print(f"No mapping with id {args.id}", file=sys.stderr)
        return 1
    payload = prefill_from_mapping(mapping, mapping.from_system)
    ws.prefill.put(payload)
    ws.audit.append("Apply Mapping", f"Prefilled record builder with {json.dumps(payload.to_dict())}")
    print(f"Prefill stored: {payload.to_dict()}")
    return 0


def _load_condition(path: str) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            document = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}")
    condition = extract_condition(document)
    if condition is None:
        raise ValueError(f"{path} holds neither a Condition nor a Bundle with a Condition entry")
    return condition


def cmd_condition(ws: Workspace, args) -> int:
    fields: Dict[str, str] = {}
    codes = PrefillPayload(namaste=args.namaste or "", tm2=args.tm2 or "", biomed=args.biomed or "")
    sources = []
    if args.from_json:
        try:
            imported = _load_condition(args.from_json)
        except (OSError, ValueError) as e:
            print(f"Cannot import {args.from_json}: {e}", file=sys.stderr)
            return 1
        fields = condition_fields(imported)
        sources.append(codes_from_condition(imported))
        ws.audit.append("FHIR Import", f"From {args.from_json}: {imported.get('resourceType')}")
    payload = ws.prefill.take()
    if payload is not None:
        sources.append(payload)
        ws.audit.append("FHIR Prefill", json.dumps(payload.to_dict()))
    # Explicit flags win, then the imported document, then the pending prefill
    for extra in sources:
        codes = PrefillPayload(
            namaste=codes.namaste or extra.namaste,
            tm2=codes.tm2 or extra.tm2,
            biomed=codes.biomed or extra.biomed,
        )

    patient = args.patient or fields.get("patient_ref") or DEFAULT_PATIENT_REF
    clinical = args.clinical or fields.get("clinical_status") or "active"
    verification = args.verification or fields.get("verification_status") or "confirmed"
    for issue in validate_condition_inputs(patient, clinical, verification, codes.namaste, codes.tm2, codes.biomed):
        print(f"[{issue.status}] {issue.field}: {issue.message}", file=sys.stderr)

    condition = build_condition_from_prefill(
        codes,
        patient_ref=patient,
        clinical_status=clinical,
        verification_status=verification,
        resource_id=new_condition_id(),
    )
    if args.save_draft:
        ws.drafts.add(condition)
        ws.audit.append("Save Condition", f"Saved Condition ({condition['id']}) to local Bundle draft")
    document = make_bundle([condition]) if args.bundle else condition
    print(json.dumps(document, indent=2, ensure_ascii=False))
    return 0


def cmd_drafts(ws: Workspace, args) -> int:
    if args.clear:
        ws.drafts.clear()
        ws.audit.append("Clear Bundle Draft", "Deleted all items")
        print("Bundle draft cleared")
        return 0
    if args.remove is not None:
        if not ws.drafts.remove_at(args.remove):
            print(f"No draft entry at index {args.remove}", file=sys.stderr)
            return 1
        ws.audit.append("Delete Draft Entry", f"Removed index {args.remove}")
        print(f"Removed draft entry {args.remove}")
        return 0
    print(ws.drafts.export_bundle())
    return 0


def _print_suggestions(result) -> None:
    if result.error:
        print(f"AI error: {result.error}", file=sys.stderr)
        return
    print(f"AI suggestions for {result.query}:")
    for g in result.groups:
        items = ", ".join(f"{c.code} ({c.term})" for c in g.candidates) or "—"
        print(f"  {g.system}: {items}")


def cmd_suggest(ws: Workspace, args) -> int:
    adapter = SuggestionAdapter(ws.catalog, ws.llm(), max_per_system=ws.config.llm.max_per_system)
    result = asyncio.run(adapter.suggest(args.query, args.direction))
    _print_suggestions(result)
    if result.ok:
        ws.audit.append("AI Suggest (Mapping)", f'Asked AI for "{result.query}" from {_from_system(args.direction)}')
    return 0 if result.ok else 2


def cmd_explain(ws: Workspace, args) -> int:
    adapter = SuggestionAdapter(ws.catalog, ws.llm())
    entry = _lookup(ws.catalog, args.ref)
    print(asyncio.run(adapter.explain(entry)))
    ws.audit.append("AI Explain Code", entry.key)
    return 0


def cmd_ask(ws: Workspace, args) -> int:
    adapter = SuggestionAdapter(ws.catalog, ws.llm())
    print(asyncio.run(adapter.ask_support(" ".join(args.question))))
    return 0


def cmd_stats(ws: Workspace, args) -> int:
    print(json.dumps(ws.catalog.counts(), indent=2))
    return 0


def cmd_audit(ws: Workspace, args) -> int:
    if args.clear:
        ws.audit.clear()
        print("Activity log cleared")
        return 0
    for e in ws.audit.list()[: args.limit]:
        print(f"{e.timestamp}  {e.user:<8} {e.action:<22} {e.details}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Browse codes and manage NAMASTE ⇄ ICD-11 mappings")
    parser.add_argument("--data-dir", default=None, help="Workspace directory for persisted state")
    parser.add_argument("--catalog-json", default=None, help="Path or URL of the JSON code dataset")
    parser.add_argument("--catalog-csv", default=None, help="Path or URL of the delimited fallback dataset")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    def with_direction(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--direction", choices=DIRECTIONS, default="toClassification")
        return p

    p = with_direction(sub.add_parser("search", help="Rank candidate mappings for a code or term"))
    p.add_argument("query")
    p.set_defaults(func=cmd_search)

    p = with_direction(sub.add_parser("approve", help="Approve a SOURCE → DEST mapping"))
    p.add_argument("source", type=_parse_ref, help="SYSTEM:CODE")
    p.add_argument("dest", type=_parse_ref, help="SYSTEM:CODE")
    p.add_argument("--score", type=float, default=None, help="Override the computed similarity score")
    p.set_defaults(func=cmd_approve)

    p = sub.add_parser("remove", help="Remove an approved mapping by id")
    p.add_argument("id")
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser("list", help="List approved mappings")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("export", help="Write approved mappings to a JSON file")
    p.add_argument("--out", default="mappings.json")
    p.add_argument("--csv", default=None, help="Optional flat CSV export")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="Import a mapping sheet (namaste, tm2, biomed columns)")
    p.add_argument("path")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("apply", help="Prefill the Condition builder from a mapping")
    p.add_argument("id")
    p.set_defaults(func=cmd_apply)

    p = sub.add_parser("condition", help="Build a Condition from codes or the pending prefill")
    p.add_argument("--patient", default=None, help="Defaults to the imported subject, else Patient/123")
    p.add_argument("--clinical", default=None, help="Clinical status (default: active)")
    p.add_argument("--verification", default=None, help="Verification status (default: confirmed)")
    p.add_argument("--from-json", default=None, help="Prefill from a Condition or Bundle JSON file")
    p.add_argument("--namaste", default=None)
    p.add_argument("--tm2", default=None)
    p.add_argument("--biomed", default=None)
    p.add_argument("--save-draft", action="store_true")
    p.add_argument("--bundle", action="store_true", help="Wrap the Condition in a collection Bundle")
    p.set_defaults(func=cmd_condition)

    p = sub.add_parser("drafts", help="Show, prune or clear the Bundle draft")
    p.add_argument("--clear", action="store_true")
    p.add_argument("--remove", type=int, default=None, metavar="INDEX", help="Delete one entry (0 is newest)")
    p.set_defaults(func=cmd_drafts)

    p = with_direction(sub.add_parser("suggest", help="Ask the AI service for candidate codes"))
    p.add_argument("query")
    p.set_defaults(func=cmd_suggest)

    p = sub.add_parser("explain", help="Ask the AI service to explain a code")
    p.add_argument("ref", type=_parse_ref, help="SYSTEM:CODE")
    p.set_defaults(func=cmd_explain)

    p = sub.add_parser("ask", help="Ask the support assistant")
    p.add_argument("question", nargs="+")
    p.set_defaults(func=cmd_ask)

    p = sub.add_parser("stats", help="Catalog totals and mapping coverage")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("audit", help="Show the activity log")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--clear", action="store_true")
    p.set_defaults(func=cmd_audit)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.data_dir:
        config = replace(config, data_dir=args.data_dir)
    configure_logging(args.log_level or config.log_level, json_output=config.log_json)
    ws = Workspace(
        config,
        json_location=args.catalog_json or config.catalog.json_location,
        csv_location=args.catalog_csv or config.catalog.csv_location,
    )
    return args.func(ws, args)


if __name__ == "__main__":
    sys.exit(main())
