"""
Consistency Rule Registry — cross-document defect rules.

Pure evaluation over an in-memory ``GraphSnapshot`` of one PFMEA and every
document derived from it.  No database access here; the snapshot is built by
``consistency_service.load_snapshot``.

Rules (evaluated independently; several may fire for the same entity):

    R1  HIGH    PFMEA line with AP "H" or RPN ≥ 100 has no control plan item
    R2  HIGH    Control plan item has no instruction step
    R3  HIGH    Control plan item has no inspection item
    R4  MEDIUM  Control plan sampling differs from the inspection sampling plan
    R5  MEDIUM  Instruction key point lacks a control-point or abnormal-action marker
    R6  LOW     Characteristic has numeric limits but the acceptance criteria has no number

Usage:
    from apqp.services.consistency_rules import evaluate
    result = evaluate(snapshot)
    # -> ConsistencyResult(findings=[...], counts={"HIGH": 0, "MEDIUM": 1, "LOW": 0})
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from apqp.models.pfmea import AP_MEDIUM_RPN


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class Finding:
    """Single consistency defect."""
    rule: str
    severity: Severity
    target_type: str
    target_id: str
    message: str
    refs: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "target_ref": {"type": self.target_type, "id": self.target_id},
            "message": self.message,
        }


@dataclass
class ConsistencyResult:
    findings: list[Finding] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for f in self.findings:
            counts[f.severity.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "counts": self.counts,
        }


@dataclass(frozen=True)
class GraphSnapshot:
    """Materialised document graph for one PFMEA, rows as plain dicts.

    Each sequence is in document order (step_no / item_no).
    """
    pfmea_id: str
    lines: tuple = ()
    cp_items: tuple = ()
    steps: tuple = ()
    inspection_items: tuple = ()
    characteristics: dict = field(default_factory=dict)


# ═════════════════════════════════════════════════════════════════════════════
# Markers & Normalisation
# ═════════════════════════════════════════════════════════════════════════════

CONTROL_POINT_MARKERS = ("control", "point", "criteria", "spec", "tolerance")
ABNORMAL_ACTION_MARKERS = ("abnormal", "action", "defect", "reaction", "stop", "report")

_WHITESPACE = re.compile(r"\s+")
_DIGIT = re.compile(r"\d")


def normalize_sampling(value: str | None) -> str:
    """Case-fold and drop all whitespace: "n=5 / Every Lot" → "n=5/everylot"."""
    return _WHITESPACE.sub("", value or "").lower()


def cp_sampling_text(cp_item: dict) -> str:
    return f"{cp_item.get('sample_size') or ''} / {cp_item.get('frequency') or ''}"


def _has_marker(text: str, markers: tuple) -> bool:
    return any(m in text for m in markers)


def _label(row: dict, number_key: str = "step_no") -> str:
    return f"#{row.get(number_key)} {row.get('process_step') or ''}".rstrip()


# ═════════════════════════════════════════════════════════════════════════════
# Rule Definitions
# ═════════════════════════════════════════════════════════════════════════════

def _rule_r1(snap: GraphSnapshot) -> list[Finding]:
    covered = {item["pfmea_line_id"] for item in snap.cp_items}
    findings = []
    for line in snap.lines:
        rpn = line.get("rpn") or 0
        ap = line.get("action_priority")
        if (ap == "H" or rpn >= AP_MEDIUM_RPN) and line["id"] not in covered:
            findings.append(Finding(
                rule="R1",
                severity=Severity.HIGH,
                target_type="pfmea_line",
                target_id=line["id"],
                message=f"PFMEA line {_label(line)} (RPN {rpn}, AP {ap}) has no control plan item",
                refs={"pfmea_line_id": line["id"]},
            ))
    return findings


def _rule_r2(snap: GraphSnapshot) -> list[Finding]:
    covered = {step["linked_cp_item_id"] for step in snap.steps}
    return [
        Finding(
            rule="R2",
            severity=Severity.HIGH,
            target_type="control_plan_item",
            target_id=item["id"],
            message=f"Control plan item {_label(item)} ({item.get('control_type')}) "
                    "has no work instruction step",
            refs={"control_plan_item_id": item["id"], "pfmea_line_id": item.get("pfmea_line_id")},
        )
        for item in snap.cp_items
        if item["id"] not in covered
    ]


def _rule_r3(snap: GraphSnapshot) -> list[Finding]:
    covered = {insp["linked_cp_item_id"] for insp in snap.inspection_items}
    return [
        Finding(
            rule="R3",
            severity=Severity.HIGH,
            target_type="control_plan_item",
            target_id=item["id"],
            message=f"Control plan item {_label(item)} ({item.get('control_type')}) "
                    "has no inspection item",
            refs={"control_plan_item_id": item["id"], "pfmea_line_id": item.get("pfmea_line_id")},
        )
        for item in snap.cp_items
        if item["id"] not in covered
    ]


def _rule_r4(snap: GraphSnapshot) -> list[Finding]:
    by_cp: dict[str, list[dict]] = {}
    for insp in snap.inspection_items:
        by_cp.setdefault(insp["linked_cp_item_id"], []).append(insp)

    findings = []
    for item in snap.cp_items:
        expected = cp_sampling_text(item)
        for insp in by_cp.get(item["id"], []):
            if normalize_sampling(expected) != normalize_sampling(insp.get("sampling_plan")):
                findings.append(Finding(
                    rule="R4",
                    severity=Severity.MEDIUM,
                    target_type="inspection_item",
                    target_id=insp["id"],
                    message=f"Sampling mismatch: control plan item {_label(item)} says "
                            f"'{expected}', inspection item #{insp.get('item_no')} says "
                            f"'{insp.get('sampling_plan') or ''}'",
                    refs={"control_plan_item_id": item["id"], "inspection_item_id": insp["id"]},
                ))
    return findings


def _rule_r5(snap: GraphSnapshot) -> list[Finding]:
    findings = []
    for step in snap.steps:
        key_point = (step.get("key_point") or "").lower()
        missing = []
        if not _has_marker(key_point, CONTROL_POINT_MARKERS):
            missing.append("control point")
        if not _has_marker(key_point, ABNORMAL_ACTION_MARKERS):
            missing.append("abnormal action")
        if missing:
            findings.append(Finding(
                rule="R5",
                severity=Severity.MEDIUM,
                target_type="instruction_step",
                target_id=step["id"],
                message=f"Instruction step {_label(step)} key point lacks: {', '.join(missing)}",
                refs={"instruction_step_id": step["id"],
                      "control_plan_item_id": step.get("linked_cp_item_id")},
            ))
    return findings


def _rule_r6(snap: GraphSnapshot) -> list[Finding]:
    findings = []
    for insp in snap.inspection_items:
        char = snap.characteristics.get(insp.get("characteristic_id"))
        if not char or (char.get("lsl") is None and char.get("usl") is None):
            continue
        criteria = insp.get("acceptance_criteria") or ""
        if not _DIGIT.search(criteria):
            findings.append(Finding(
                rule="R6",
                severity=Severity.LOW,
                target_type="inspection_item",
                target_id=insp["id"],
                message=f"Characteristic '{char.get('name')}' has numeric limits but "
                        f"inspection item #{insp.get('item_no')} acceptance criteria "
                        f"'{criteria}' is not quantified",
                refs={"inspection_item_id": insp["id"],
                      "control_plan_item_id": insp.get("linked_cp_item_id")},
            ))
    return findings


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════

RULES: dict[str, dict] = {
    "R1": {"fn": _rule_r1, "severity": Severity.HIGH,
           "description": "High-risk PFMEA line has no control plan item"},
    "R2": {"fn": _rule_r2, "severity": Severity.HIGH,
           "description": "Control plan item has no work instruction step"},
    "R3": {"fn": _rule_r3, "severity": Severity.HIGH,
           "description": "Control plan item has no inspection item"},
    "R4": {"fn": _rule_r4, "severity": Severity.MEDIUM,
           "description": "Control plan sampling does not match inspection sampling plan"},
    "R5": {"fn": _rule_r5, "severity": Severity.MEDIUM,
           "description": "Work instruction key point lacks control point or abnormal action"},
    "R6": {"fn": _rule_r6, "severity": Severity.LOW,
           "description": "Acceptance criteria not quantified for a characteristic with limits"},
}


def rule_description(rule: str) -> str:
    return RULES.get(rule, {}).get("description", "")


def evaluate(snapshot: GraphSnapshot) -> ConsistencyResult:
    """Run every rule; findings ordered by rule, then document order."""
    result = ConsistencyResult()
    for rule in RULES.values():
        result.findings.extend(rule["fn"](snapshot))
    return result
