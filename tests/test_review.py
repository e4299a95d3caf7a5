"""
Tests — PFMEA review (LLM audit with rule-based fallback).
"""

import pytest

from apqp.core.exceptions import NotFoundError, UpstreamEmptyError, ValidationError
from apqp.services.pfmea_review import review_pfmea


def test_fallback_review_when_gateway_unconfigured(scenario_pfmea):
    result = review_pfmea(scenario_pfmea.id)
    assert result["pfmea_id"] == scenario_pfmea.id
    assert result["ai_powered"] is False
    review = result["review"]
    # S8/D7 line: one warning for severity + detection
    assert any(f["type"] == "warning" for f in review["findings"])
    assert 40 <= review["overall_score"] <= 100


def test_generated_review_is_normalized(scenario_pfmea, gateway_factory):
    gateway, provider = gateway_factory([{
        "overall_score": 140,
        "findings": [{"type": "warning", "target": "[1] Turning", "message": "Raise detection"}, "junk"],
        "summary": "One risk needs attention",
    }])
    result = review_pfmea(scenario_pfmea.id, gateway=gateway)

    assert result["ai_powered"] is True
    assert result["review"]["overall_score"] == 100
    assert len(result["review"]["findings"]) == 1
    assert result["review"]["summary"] == "One risk needs attention"
    assert len(provider.calls) == 1
    prompt = provider.calls[0][-1]["content"]
    assert "RPN=336" in prompt


def test_unparseable_score_uses_fallback(scenario_pfmea, gateway_factory):
    gateway, _ = gateway_factory([{"overall_score": "n/a", "findings": "none", "summary": ""}])
    result = review_pfmea(scenario_pfmea.id, gateway=gateway)
    assert result["ai_powered"] is True
    assert result["review"]["overall_score"] >= 40
    assert result["review"]["findings"]


def test_pfmea_without_lines(seed):
    product = seed.product(code="P-200", name="Housing")
    pfmea = seed.pfmea(product, [])
    with pytest.raises(UpstreamEmptyError):
        review_pfmea(pfmea.id)


def test_missing_and_unknown_pfmea():
    with pytest.raises(ValidationError):
        review_pfmea(None)
    with pytest.raises(NotFoundError):
        review_pfmea("missing")
