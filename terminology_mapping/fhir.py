"""Minimal FHIR-style Condition / Bundle assembly from approved codes."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Literal, Optional

import structlog

from .schemas import PrefillPayload
from .storage import BUNDLE_DRAFT_KEY, KeyValueStorage, read_json_list, write_json


logger = structlog.get_logger(__name__)

NAMASTE_CODING_SYSTEM = "urn:example:namaste"
TM2_CODING_SYSTEM = "urn:example:icd11-tm2"
BIOMED_CODING_SYSTEM = "urn:example:icd11-biomed"
CLINICAL_STATUS_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-clinical"
VERIFICATION_STATUS_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-ver-status"

CLINICAL_STATUSES = ("active", "recurrence", "relapse", "inactive", "remission", "resolved")
VERIFICATION_STATUSES = (
    "confirmed",
    "unconfirmed",
    "provisional",
    "differential",
    "refuted",
    "entered-in-error",
)

DEFAULT_PATIENT_REF = "Patient/123"

_PATIENT_REF = re.compile(r"^Patient/[A-Za-z0-9._-]+$")

Status = Literal["valid", "warn", "error"]


@dataclass
class ValidationIssue:
    field: str
    status: Status
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_condition_id() -> str:
    return f"cond-{int(time.time() * 1000)}"


def build_condition(
    patient_ref: str = DEFAULT_PATIENT_REF,
    clinical_status: str = "active",
    verification_status: str = "confirmed",
    namaste: str = "",
    tm2: str = "",
    biomed: str = "",
    resource_id: Optional[str] = None,
) -> Dict[str, Any]:
    codings = []
    if namaste:
        codings.append({"system": NAMASTE_CODING_SYSTEM, "code": namaste, "display": "NAMASTE code"})
    if tm2:
        codings.append({"system": TM2_CODING_SYSTEM, "code": tm2, "display": "ICD-11 TM2"})
    if biomed:
        codings.append({"system": BIOMED_CODING_SYSTEM, "code": biomed, "display": "ICD-11 Biomed"})

    condition: Dict[str, Any] = {"resourceType": "Condition"}
    if resource_id:
        condition["id"] = resource_id
    condition.update(
        {
            "subject": {"reference": patient_ref or "Patient/unknown"},
            "clinicalStatus": {"coding": [{"system": CLINICAL_STATUS_SYSTEM, "code": clinical_status}]},
            "verificationStatus": {"coding": [{"system": VERIFICATION_STATUS_SYSTEM, "code": verification_status}]},
            "category": [
                {"coding": [{"system": "urn:example:category", "code": "tm", "display": "Traditional Medicine"}]}
            ],
        }
    )
    if codings:
        condition["code"] = {"coding": codings}
    return condition


def build_condition_from_prefill(payload: PrefillPayload, **kwargs: Any) -> Dict[str, Any]:
    return build_condition(namaste=payload.namaste, tm2=payload.tm2, biomed=payload.biomed, **kwargs)


def validate_condition_inputs(
    patient_ref: str,
    clinical_status: str,
    verification_status: str,
    namaste: str = "",
    tm2: str = "",
    biomed: str = "",
) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if _PATIENT_REF.match(patient_ref or ""):
        issues.append(ValidationIssue("Patient Reference", "valid", "Looks good."))
    else:
        issues.append(ValidationIssue("Patient Reference", "error", "Expected format like 'Patient/123'."))

    issues.append(
        ValidationIssue("Clinical Status", "valid" if clinical_status else "error", clinical_status or "Required.")
    )
    issues.append(
        ValidationIssue(
            "Verification Status",
            "valid" if verification_status else "error",
            verification_status or "Required.",
        )
    )

    if biomed:
        issues.append(ValidationIssue("ICD-11 Biomed", "valid", biomed))
    else:
        issues.append(
            ValidationIssue("ICD-11 Biomed", "warn", "Missing biomedical code may affect interoperability.")
        )
    if not (namaste or tm2 or biomed):
        issues.append(ValidationIssue("Dual Coding", "warn", "Add at least one coding (NAMASTE/TM2/Biomed)."))
    return issues


def make_bundle(resources: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "resourceType": "Bundle",
        "type": "collection",
        "entry": [{"resource": r} for r in resources],
    }


def extract_condition(document: Any) -> Optional[Dict[str, Any]]:
    """The Condition itself, or the first Condition entry of a Bundle."""
    if not isinstance(document, dict):
        return None
    if document.get("resourceType") == "Condition":
        return document
    if document.get("resourceType") == "Bundle" and isinstance(document.get("entry"), list):
        for entry in document["entry"]:
            resource = entry.get("resource") if isinstance(entry, dict) else None
            if isinstance(resource, dict) and resource.get("resourceType") == "Condition":
                return resource
    return None


def _first_coding_code(element: Any) -> str:
    codings = element.get("coding") if isinstance(element, dict) else None
    if isinstance(codings, list) and codings and isinstance(codings[0], dict):
        return str(codings[0].get("code") or "")
    return ""


def condition_fields(resource: Dict[str, Any]) -> Dict[str, str]:
    """Subject and status values present on an imported Condition; absent ones are omitted."""
    out: Dict[str, str] = {}
    subject = resource.get("subject")
    reference = subject.get("reference") if isinstance(subject, dict) else None
    if isinstance(reference, str) and reference:
        out["patient_ref"] = reference
    clinical = _first_coding_code(resource.get("clinicalStatus"))
    if clinical:
        out["clinical_status"] = clinical
    verification = _first_coding_code(resource.get("verificationStatus"))
    if verification:
        out["verification_status"] = verification
    return out


def codes_from_condition(resource: Dict[str, Any]) -> PrefillPayload:
    out = PrefillPayload()
    codings = ((resource or {}).get("code") or {}).get("coding") or []
    for c in codings:
        if not isinstance(c, dict):
            continue
        system = str(c.get("system") or "").lower()
        code = str(c.get("code") or "")
        if not code:
            continue
        if "namaste" in system:
            out.namaste = out.namaste or code
        elif "tm2" in system or "traditional" in system:
            out.tm2 = out.tm2 or code
        elif "biomed" in system or "icd" in system:
            out.biomed = out.biomed or code
    return out


class BundleDraft:
    """Local list of saved resources, newest first, exportable as one Bundle."""

    def __init__(self, storage: KeyValueStorage, key: str = BUNDLE_DRAFT_KEY):
        self.storage = storage
        self.key = key

    def list(self) -> List[Dict[str, Any]]:
        return [
            item["resource"]
            for item in read_json_list(self.storage, self.key)
            if isinstance(item, dict) and isinstance(item.get("resource"), dict)
        ]

    def _save(self, resources: List[Dict[str, Any]]) -> None:
        write_json(self.storage, self.key, [{"resource": r} for r in resources])

    def add(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(resource)
        stored.setdefault("id", new_condition_id())
        self._save([stored] + self.list())
        logger.info("Resource saved to bundle draft", resource_id=stored["id"])
        return stored

    def remove_at(self, index: int) -> bool:
        resources = self.list()
        if not 0 <= index < len(resources):
            return False
        del resources[index]
        self._save(resources)
        return True

    def clear(self) -> None:
        self._save([])

    def export_bundle(self) -> str:
        return json.dumps(make_bundle(self.list()), indent=2, ensure_ascii=False)
