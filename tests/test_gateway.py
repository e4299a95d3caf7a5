"""
APQP Document Platform
Tests — LLM gateway and prompt registry.

Covers:
    - JSON body parsing (fences, surrounding prose, non-objects)
    - retry-then-fallback with required-key validation
    - unconfigured gateway makes no call
    - provider selection from configured keys
    - prompt rendering and YAML overrides
"""

from unittest.mock import patch

import pytest

from apqp.ai.gateway import LLMGateway, parse_json_object
from apqp.ai.prompt_registry import PromptRegistry, PromptTemplate

FALLBACK = {"control_method": "fallback", "sample_size": "n=5"}
KEYS = ("control_method", "sample_size")


class TestParseJson:

    def test_plain_object(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_code_fence(self):
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_surrounding_prose(self):
        assert parse_json_object('Here you go: {"a": {"b": 2}} thanks') == {"a": {"b": 2}}

    @pytest.mark.parametrize("body", ["", None, "[1, 2]", "not json"])
    def test_rejects(self, body):
        with pytest.raises(ValueError):
            parse_json_object(body)


class TestGenerate:

    def test_success_first_attempt(self, gateway_factory):
        gw, provider = gateway_factory([{"control_method": "CMM", "sample_size": "n=2"}])
        result = gw.generate([{"role": "user", "content": "x"}], KEYS, FALLBACK)
        assert result.ok
        assert result.attempts == 1
        assert result.content["control_method"] == "CMM"
        assert len(provider.calls) == 1

    def test_missing_key_retries_then_succeeds(self, gateway_factory):
        gw, provider = gateway_factory([
            {"control_method": "CMM"},
            {"control_method": "CMM", "sample_size": ""},
        ])
        result = gw.generate([], KEYS, FALLBACK)
        assert result.ok
        assert result.attempts == 2
        assert result.content["sample_size"] == ""

    def test_exhausted_returns_fallback(self, gateway_factory):
        gw, provider = gateway_factory([RuntimeError("timeout")], LLM_MAX_RETRIES=3)
        result = gw.generate([], KEYS, FALLBACK)
        assert not result.ok
        assert result.content == FALLBACK
        assert result.attempts == 3
        assert len(provider.calls) == 3
        assert "timeout" in result.error

    def test_linear_backoff_between_attempts(self, gateway_factory):
        gw, provider = gateway_factory([RuntimeError("503")], LLM_MAX_RETRIES=3,
                                       LLM_RETRY_BACKOFF_SECONDS=1.5)
        with patch("apqp.ai.gateway._backoff_wait") as wait:
            result = gw.generate([], KEYS, FALLBACK)

        assert not result.ok
        assert len(provider.calls) == 3
        # no wait after the final attempt
        assert [c.args[0] for c in wait.call_args_list] == [1.5, 3.0]

    def test_no_wait_when_backoff_disabled(self, gateway_factory):
        gw, _ = gateway_factory([RuntimeError("503")], LLM_MAX_RETRIES=3)
        with patch("apqp.ai.gateway._backoff_wait") as wait:
            gw.generate([], KEYS, FALLBACK)
        wait.assert_not_called()

    def test_non_object_body_counts_as_failure(self, gateway_factory):
        gw, _ = gateway_factory(["[]"], LLM_MAX_RETRIES=2)
        result = gw.generate([], KEYS, FALLBACK)
        assert not result.ok
        assert result.attempts == 2

    def test_unconfigured_gateway_skips_calls(self):
        gw = LLMGateway({"OPENAI_API_KEY": "", "ANTHROPIC_API_KEY": "", "GEMINI_API_KEY": ""})
        assert not gw.is_configured
        result = gw.generate([], KEYS, FALLBACK)
        assert not result.ok
        assert result.attempts == 0
        assert result.content == FALLBACK


class TestProviderSelection:

    def test_only_keyed_providers_registered(self):
        gw = LLMGateway({"ANTHROPIC_API_KEY": "sk-ant", "LLM_PROVIDER": "openai"})
        assert gw.provider_name == "anthropic"
        assert gw.model == LLMGateway.DEFAULT_MODELS["anthropic"]

    def test_model_routes_to_provider(self):
        gw = LLMGateway({"OPENAI_API_KEY": "sk", "GEMINI_API_KEY": "g", "LLM_MODEL": "gemini-2.5-pro"})
        assert gw.provider_name == "gemini"
        assert gw.model == "gemini-2.5-pro"


class TestPromptRegistry:

    def test_defaults_registered(self):
        names = {t["name"] for t in PromptRegistry().list_templates()}
        assert {"pfmea_line", "control_plan_item", "instruction_step",
                "inspection_item", "pfmea_review"} <= names

    def test_render_substitutes_and_dashes_empty(self):
        tpl = PromptTemplate("t", "v1", system="", user="A={{a}} B={{b}} C={{c}}")
        messages = tpl.render(a="x", b=None)
        assert messages == [{"role": "user", "content": "A=x B=- C={{c}}"}]

    def test_render_unknown_template(self):
        with pytest.raises(KeyError):
            PromptRegistry().render("nope")

    def test_yaml_override(self, tmp_path):
        (tmp_path / "cp.yaml").write_text(
            "name: control_plan_item\nversion: v1\nsystem: Custom\nuser: Step {{process_step}}\n",
            encoding="utf-8",
        )
        (tmp_path / "broken.yaml").write_text("name: [unclosed", encoding="utf-8")
        registry = PromptRegistry(str(tmp_path))
        messages = registry.render("control_plan_item", process_step="Turning")
        assert messages[0] == {"role": "system", "content": "Custom"}
        assert messages[1]["content"] == "Step Turning"
