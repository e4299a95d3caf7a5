"""
PFMEA review — audit a complete PFMEA through the LLM gateway.

All lines are sent in one request.  When the gateway is unconfigured or
every attempt fails, the rule-based review from ``fallback_content`` is
returned instead and ``ai_powered`` is False.
"""

import logging

from apqp.ai.gateway import get_gateway
from apqp.ai.prompt_registry import get_prompt_registry
from apqp.core.exceptions import NotFoundError, UpstreamEmptyError
from apqp.models import db
from apqp.models.pfmea import Pfmea, PfmeaLine
from apqp.services import fallback_content as fc
from apqp.services.generation_common import require_id

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("overall_score", "findings", "summary")


def _line_text(index: int, line: dict) -> str:
    return (
        f"[{index}] {line.get('process_step') or ''}\n"
        f"  FM: {line.get('potential_failure_mode') or ''}\n"
        f"  FE: {line.get('potential_effect') or ''} (S={line.get('severity')})\n"
        f"  FC: {line.get('potential_cause') or ''} (O={line.get('occurrence')})\n"
        f"  Prevention: {line.get('current_control_prevention') or '-'}\n"
        f"  Detection: {line.get('current_control_detection') or '-'} (D={line.get('detection')})\n"
        f"  RPN={line.get('rpn')} AP={line.get('action_priority')}\n"
        f"  Action: {line.get('recommended_action') or '-'}"
    )


def _normalize_review(content: dict, fallback: dict) -> dict:
    """Coerce the generated review into {overall_score:int, findings:list, summary:str}."""
    try:
        score = int(float(content.get("overall_score")))
    except (TypeError, ValueError):
        score = fallback["overall_score"]
    findings = content.get("findings")
    if not isinstance(findings, list):
        findings = fallback["findings"]
    return {
        "overall_score": max(0, min(100, score)),
        "findings": [f for f in findings if isinstance(f, dict)],
        "summary": str(content.get("summary") or fallback["summary"]),
    }


def review_pfmea(pfmea_id, *, gateway=None) -> dict:
    """
    Review one PFMEA.

    Returns:
        {"pfmea_id", "review": {overall_score, findings, summary}, "ai_powered": bool}

    Raises:
        ValidationError: pfmea_id missing.
        NotFoundError: PFMEA does not exist.
        UpstreamEmptyError: PFMEA has no lines.
    """
    pfmea_id = require_id(pfmea_id, "pfmea_id")
    pfmea = db.session.get(Pfmea, pfmea_id)
    if pfmea is None:
        raise NotFoundError("Pfmea", pfmea_id)

    lines = [
        line.to_dict()
        for line in PfmeaLine.query.filter_by(pfmea_id=pfmea_id)
        .order_by(PfmeaLine.step_no, PfmeaLine.id)
        .all()
    ]
    if not lines:
        raise UpstreamEmptyError("Pfmea", pfmea_id, reason="no lines to review")

    fallback = fc.pfmea_review(lines)
    messages = get_prompt_registry().render(
        "pfmea_review",
        product_name=pfmea.product.name if pfmea.product else "",
        process_name=pfmea.process_name,
        lines_count=len(lines),
        lines_text="\n\n".join(_line_text(i, line) for i, line in enumerate(lines, start=1)),
    )

    result = (gateway or get_gateway()).generate(
        messages, REQUIRED_KEYS, fallback, purpose="pfmea.review",
    )
    review = _normalize_review(result.content, fallback) if result.ok else fallback
    logger.info("PFMEA %s reviewed (ai=%s, score=%s, findings=%d)",
                pfmea_id, result.ok, review["overall_score"], len(review["findings"]))
    return {"pfmea_id": pfmea_id, "review": review, "ai_powered": result.ok}
