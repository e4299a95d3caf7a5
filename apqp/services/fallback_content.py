"""
Fallback Content Synthesizer — rule-based document content.

Pure, deterministic functions: given the upstream row (as a plain dict) they
return a content dict that satisfies the same required-key set the LLM prompt
asks for.  Stage generators pass these as the gateway ``fallback`` so a usable
document exists even when the generative service is unreachable.

Nothing here raises.  Missing input fields are handled by the fallback
branches themselves.

Usage:
    from apqp.services import fallback_content as fc
    content = fc.control_plan_content("detection", line, characteristic)
"""

from __future__ import annotations


# ═════════════════════════════════════════════════════════════════════════════
# Constants
# ═════════════════════════════════════════════════════════════════════════════

# category → (sample_size, frequency)
SAMPLING_BY_CATEGORY: dict[str, tuple[str, str]] = {
    "critical": ("100%", "every unit"),
    "major": ("n=5", "every lot"),
    "minor": ("n=3", "daily"),
}

PREVENTION_METHOD_DEFAULT = "Follow work instruction; start-up check"
DETECTION_METHOD_DEFAULT = "Measurement inspection"
PREVENTION_REACTION_DEFAULT = "Stop work, notify supervisor, analyse root cause"
DETECTION_REACTION_DEFAULT = (
    "Isolate nonconforming parts, re-inspect the lot, stop the line on consecutive NG"
)
RESPONSIBLE_BY_TYPE = {"prevention": "Operator", "detection": "QC Inspector"}

DEFAULT_STEP_TIME_SEC = 60
ABNORMAL_ACTION_DEFAULT = "Stop the line immediately and report to the supervisor"
TOOLS_DEFAULT = "Measuring instrument"
SPEC_UNDEFINED = "Specification to be confirmed"

RECHECK_COUNT = 3
RECHECK_PASS_MIN = 2
CONSECUTIVE_NG_LIMIT = 3
NG_HANDLING_TEXT = (
    "[Isolate] Move the rejected part to the NG box immediately and attach an identification tag\n"
    f"[Re-inspect] Re-measure {RECHECK_COUNT} times under the same conditions; "
    f"accept if {RECHECK_PASS_MIN} or more measurements pass\n"
    f"[Root Cause] Stop the line and start a 4M analysis after {CONSECUTIVE_NG_LIMIT} consecutive NG"
)

LIMIT_SAMPLE_CRITICAL = "Matches limit sample (critical characteristic)"
LIMIT_SAMPLE_DEFAULT = "Matches limit sample"

SEVERITY_BY_CATEGORY = {"critical": 8, "major": 6, "minor": 4}
PFMEA_DEFAULT_OCCURRENCE = 5
PFMEA_DEFAULT_DETECTION = 5
EFFECT_BY_CATEGORY = {
    "critical": "Loss of product function; customer complaint likely",
    "major": "Degraded product performance; quality issue likely",
    "minor": "Cosmetic defect; minor quality degradation",
}


# ═════════════════════════════════════════════════════════════════════════════
# Formatting helpers
# ═════════════════════════════════════════════════════════════════════════════

def format_number(value) -> str:
    """Render a spec limit without a trailing ``.0`` (2.0 → "2", 9.5 → "9.5")."""
    if value is None:
        return ""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return str(number)


def limit_text(characteristic: dict) -> str | None:
    """Quantified limit text, or None when the characteristic has no limits."""
    lsl = characteristic.get("lsl")
    usl = characteristic.get("usl")
    unit = characteristic.get("unit") or ""
    if lsl is not None and usl is not None:
        return f"{format_number(lsl)}{unit} ~ {format_number(usl)}{unit}"
    if lsl is not None:
        return f"≥ {format_number(lsl)}{unit}"
    if usl is not None:
        return f"≤ {format_number(usl)}{unit}"
    return None


def spec_text(characteristic: dict, default: str = SPEC_UNDEFINED) -> str:
    """Nominal specification string, else the limit range, else ``default``."""
    return characteristic.get("specification") or limit_text(characteristic) or default


def _category(characteristic: dict) -> str:
    category = characteristic.get("category") or "minor"
    return category if category in SAMPLING_BY_CATEGORY else "minor"


# ═════════════════════════════════════════════════════════════════════════════
# Control Plan
# ═════════════════════════════════════════════════════════════════════════════

def control_plan_content(control_type: str, line: dict, characteristic: dict) -> dict:
    """Prevention or detection control for one PFMEA line.

    Sampling aggressiveness follows the characteristic category.  Method text
    prefers the line's existing control; detection falls back to the
    characteristic's measurement method.
    """
    sample_size, frequency = SAMPLING_BY_CATEGORY[_category(characteristic)]

    if control_type == "prevention":
        method = line.get("current_control_prevention") or PREVENTION_METHOD_DEFAULT
        reaction = line.get("recommended_action") or PREVENTION_REACTION_DEFAULT
    else:
        method = (
            line.get("current_control_detection")
            or characteristic.get("measurement_method")
            or DETECTION_METHOD_DEFAULT
        )
        reaction = DETECTION_REACTION_DEFAULT

    return {
        "control_method": method,
        "sample_size": sample_size,
        "frequency": frequency,
        "reaction_plan": reaction,
        "responsible": RESPONSIBLE_BY_TYPE.get(control_type, "Operator"),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Work Instruction
# ═════════════════════════════════════════════════════════════════════════════

def key_point_text(characteristic: dict, check_method: str, abnormal_action: str) -> str:
    """Three-part key point: control point, check method, abnormal action."""
    return (
        f"[Control Point] {characteristic.get('name', '')}: {spec_text(characteristic)}\n"
        f"[Check Method] {check_method}\n"
        f"[Abnormal Action] {abnormal_action}"
    )


def instruction_step_content(cp_item: dict, characteristic: dict) -> dict:
    """Operator step for one control plan item."""
    control_method = cp_item.get("control_method") or ""
    check_method = characteristic.get("measurement_method") or control_method or DETECTION_METHOD_DEFAULT
    abnormal_action = cp_item.get("reaction_plan") or ABNORMAL_ACTION_DEFAULT

    quality_point = f"{characteristic.get('name', '')}: {spec_text(characteristic)}"
    if characteristic.get("category") == "critical":
        quality_point = f"★ Critical - {quality_point}"

    return {
        "action": f"{cp_item.get('process_step', '')} - {control_method}",
        "key_point": key_point_text(characteristic, check_method, abnormal_action),
        "safety_note": None,
        "estimated_time_sec": DEFAULT_STEP_TIME_SEC,
        "quality_point": quality_point,
        "tools_equipment": characteristic.get("measurement_method") or TOOLS_DEFAULT,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Inspection Plan
# ═════════════════════════════════════════════════════════════════════════════

def acceptance_criteria(characteristic: dict) -> str:
    """
    Quantified acceptance criteria, by priority:
      both limits   → "{lsl}{unit} ~ {usl}{unit}"
      one limit     → "≥ {lsl}{unit}" / "≤ {usl}{unit}"
      spec string   → as-is
      critical      → limit sample statement (critical)
      otherwise     → generic limit sample statement
    """
    quantified = limit_text(characteristic)
    if quantified:
        return quantified
    if characteristic.get("specification"):
        return characteristic["specification"]
    if characteristic.get("category") == "critical":
        return LIMIT_SAMPLE_CRITICAL
    return LIMIT_SAMPLE_DEFAULT


def sampling_plan_text(cp_item: dict) -> str:
    return f"{cp_item.get('sample_size') or ''} / {cp_item.get('frequency') or ''}"


def inspection_item_content(cp_item: dict, characteristic: dict) -> dict:
    """Inspection check for one control plan item."""
    return {
        "inspection_item_name": f"{characteristic.get('name', '')} inspection",
        "inspection_method": (
            characteristic.get("measurement_method")
            or cp_item.get("control_method")
            or DETECTION_METHOD_DEFAULT
        ),
        "acceptance_criteria": acceptance_criteria(characteristic),
        "ng_handling": NG_HANDLING_TEXT,
        "measurement_equipment": characteristic.get("measurement_method") or TOOLS_DEFAULT,
    }


# ═════════════════════════════════════════════════════════════════════════════
# PFMEA
# ═════════════════════════════════════════════════════════════════════════════

def pfmea_line_content(characteristic: dict, process_name: str) -> dict:
    """Failure-mode line for one characteristic with category-based ratings."""
    category = _category(characteristic)
    critical = category == "critical"
    return {
        "potential_failure_mode": (
            f"{characteristic.get('name', '')} out of specification ({spec_text(characteristic)})"
        ),
        "potential_effect": EFFECT_BY_CATEGORY[category],
        "severity": SEVERITY_BY_CATEGORY[category],
        "potential_cause": f"{process_name} process variation, equipment malfunction, operator error",
        "occurrence": PFMEA_DEFAULT_OCCURRENCE,
        "current_control_prevention": "Follow work standard, periodic equipment check",
        "current_control_detection": (
            characteristic.get("measurement_method") or "Visual and measurement inspection"
        ),
        "detection": PFMEA_DEFAULT_DETECTION,
        "recommended_action": (
            "Introduce error-proofing and strengthen 100% inspection"
            if critical
            else "Strengthen sampling inspection and operator training"
        ),
    }


def pfmea_review(lines: list[dict]) -> dict:
    """Rule-based PFMEA review.

    Per line:
      RPN ≥ 200 with a thin recommended action   → warning
      severity ≥ 8 and detection ≥ 7              → warning
      occurrence ≥ 6 with a thin prevention       → improvement
    Score = max(40, 100 − 10·warnings − 5·improvements).
    """
    findings: list[dict] = []
    for index, line in enumerate(lines, start=1):
        label = f"[{index}] {line.get('process_step', '')}"
        rpn = line.get("rpn") or 0
        severity = line.get("severity") or 0
        occurrence = line.get("occurrence") or 0
        detection = line.get("detection") or 0

        if rpn >= 200 and len(line.get("recommended_action") or "") < 10:
            findings.append({
                "type": "warning",
                "target": label,
                "message": f"RPN {rpn} is high risk but the recommended action is insufficient. "
                           "Add a concrete improvement action.",
            })
        if severity >= 8 and detection >= 7:
            findings.append({
                "type": "warning",
                "target": label,
                "message": f"Severity ({severity}) and detection ({detection}) are both high. "
                           "Strengthen detection controls.",
            })
        if occurrence >= 6 and len(line.get("current_control_prevention") or "") < 5:
            findings.append({
                "type": "improvement",
                "target": label,
                "message": f"Occurrence ({occurrence}) is high but prevention control is insufficient. "
                           "Reinforce preventive measures.",
            })

    if lines and not any((line.get("rpn") or 0) >= 200 for line in lines):
        findings.append({
            "type": "improvement",
            "target": "Overall",
            "message": "No high-risk lines. Confirm that S/O/D ratings reflect actual process data.",
        })

    warnings = sum(1 for f in findings if f["type"] == "warning")
    improvements = sum(1 for f in findings if f["type"] == "improvement")
    return {
        "overall_score": max(40, 100 - warnings * 10 - improvements * 5),
        "findings": findings,
        "summary": f"Reviewed {len(lines)} lines: {warnings} warnings, {improvements} improvements.",
    }
