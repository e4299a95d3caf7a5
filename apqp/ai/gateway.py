"""
APQP Document Platform
LLM Gateway — structured JSON generation with retry-then-fallback.

Provider-agnostic router with:
    - Multi-provider support (OpenAI, Anthropic Claude, Google Gemini)
    - Bounded retries with linear backoff (backoff × attempt)
    - Per-call timeout handed to the provider client
    - Required-key validation of the returned JSON object
    - Caller-supplied fallback returned when every attempt fails

The gateway never raises.  Failure is a value: ``GenerationResult.ok`` is
False and ``content`` is the caller's fallback, so stage code always receives
well-formed content.

Usage:
    from apqp.ai.gateway import get_gateway
    gw = get_gateway()
    result = gw.generate(messages, required_keys=("control_method",), fallback=fb)
    content = result.content
"""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from flask import current_app

logger = logging.getLogger(__name__)


# ── Result type ───────────────────────────────────────────────────────────────

@dataclass
class GenerationResult:
    """Outcome of one ``LLMGateway.generate`` call.

    ``content`` is always a usable dict: verified generated content when
    ``ok`` is True, otherwise the fallback the caller supplied.
    """
    ok: bool
    content: dict = field(default_factory=dict)
    attempts: int = 0
    error: str | None = None


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    def __init__(self, api_key: str, timeout: float = 30.0):
        self.api_key = api_key
        self.timeout = timeout
        self._client = None

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, json_mode.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI chat completions (JSON object response format)."""

    def __init__(self, api_key: str, timeout: float = 30.0, base_url: str | None = None):
        super().__init__(api_key, timeout)
        self.base_url = base_url

    def _get_client(self):
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai")
            self._client = openai.OpenAI(
                api_key=self.api_key, base_url=self.base_url or None,
                timeout=self.timeout, max_retries=0,
            )
        return self._client

    def chat(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        client = self._get_client()
        params = {
            "model": model,
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", 2048),
            "temperature": kwargs.get("temperature", 0.3),
        }
        if kwargs.get("json_mode"):
            params["response_format"] = {"type": "json_object"}
        response = client.chat.completions.create(**params)
        choice = response.choices[0]
        return {
            "content": choice.message.content,
            "prompt_tokens": response.usage.prompt_tokens if response.usage else 0,
            "completion_tokens": response.usage.completion_tokens if response.usage else 0,
            "model": model,
        }


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    def _get_client(self):
        if self._client is None:
            try:
                import anthropic
            except ImportError:
                raise RuntimeError("anthropic package not installed. Run: pip install anthropic")
            self._client = anthropic.Anthropic(
                api_key=self.api_key, timeout=self.timeout, max_retries=0,
            )
        return self._client

    def chat(self, messages: list, model: str = "claude-3-5-haiku-20241022", **kwargs) -> dict:
        client = self._get_client()

        # Separate system message
        system_msg = ""
        chat_messages = []
        for m in messages:
            if m["role"] == "system":
                system_msg = m["content"]
            else:
                chat_messages.append(m)

        params = {
            "model": model,
            "messages": chat_messages,
            "max_tokens": kwargs.get("max_tokens", 2048),
            "temperature": kwargs.get("temperature", 0.3),
        }
        if system_msg:
            params["system"] = system_msg

        response = client.messages.create(**params)

        return {
            "content": response.content[0].text if response.content else "",
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


# ── Google Gemini Provider ────────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Environment:
        GEMINI_API_KEY — obtain at https://aistudio.google.com/apikey
    """

    def _get_client(self):
        if self._client is None:
            try:
                from google import genai
                from google.genai import types
            except ImportError:
                raise RuntimeError(
                    "google-genai package not installed. Run: pip install google-genai"
                )
            self._client = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(timeout=int(self.timeout * 1000)),
            )
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

        # Separate system instruction from conversation messages
        system_parts = []
        contents = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                role = "model" if m["role"] == "assistant" else "user"
                contents.append(
                    types.Content(role=role, parts=[types.Part(text=m["content"])])
                )

        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", 0.3),
            max_output_tokens=kwargs.get("max_tokens", 2048),
        )
        if kwargs.get("json_mode"):
            config.response_mime_type = "application/json"
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(model=model, contents=contents, config=config)

        usage = response.usage_metadata
        return {
            "content": response.text or "",
            "prompt_tokens": getattr(usage, "prompt_token_count", 0) or 0,
            "completion_tokens": getattr(usage, "candidates_token_count", 0) or 0,
            "model": model,
        }


# ── JSON parsing ──────────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_object(content) -> dict:
    """Parse an LLM response body into a JSON object.

    Tolerates markdown code fences and leading/trailing prose around a single
    object.  Raises ValueError when the body is empty or not an object.
    """
    if content is None or not str(content).strip():
        raise ValueError("empty response body")
    text = _FENCE_RE.sub("", str(content).strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        m = re.search(r"\{.*\}", text, re.DOTALL)
        if not m:
            raise ValueError("response is not JSON")
        try:
            data = json.loads(m.group())
        except json.JSONDecodeError as exc:
            raise ValueError(f"response is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"expected JSON object, got {type(data).__name__}")
    return data


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

def _backoff_wait(seconds: float) -> None:
    threading.Event().wait(seconds)


class LLMGateway:
    """
    Central gateway for all document-content generation.

    Providers are registered only when their API key is configured.  With no
    provider registered the gateway is "unconfigured" and ``generate`` returns
    the fallback immediately without any outbound call.

    Usage:
        gw = LLMGateway(app.config)
        result = gw.generate(messages, ("action", "key_point"), fallback, purpose="sop")
    """

    # Model → provider mapping
    PROVIDER_MAP = {
        "gpt-4o-mini": "openai",
        "gpt-4o": "openai",
        "gpt-4.1-mini": "openai",
        "claude-3-5-haiku-20241022": "anthropic",
        "claude-3-5-sonnet-20241022": "anthropic",
        "gemini-2.5-flash": "gemini",
        "gemini-2.5-pro": "gemini",
        "gemini-2.0-flash": "gemini",
    }

    DEFAULT_MODELS = {
        "openai": "gpt-4o-mini",
        "anthropic": "claude-3-5-haiku-20241022",
        "gemini": "gemini-2.5-flash",
    }

    def __init__(self, config=None, providers: dict | None = None):
        cfg = config or {}
        self.max_retries = max(1, int(cfg.get("LLM_MAX_RETRIES", 3)))
        self.backoff_seconds = float(cfg.get("LLM_RETRY_BACKOFF_SECONDS", 1.0))
        self.timeout_seconds = float(cfg.get("LLM_TIMEOUT_SECONDS", 30))
        self.temperature = float(cfg.get("LLM_TEMPERATURE", 0.3))
        self.max_tokens = int(cfg.get("LLM_MAX_TOKENS", 2048))

        self._providers = providers if providers is not None else self._init_providers(cfg)
        self._provider_name, self.model = self._select(cfg.get("LLM_PROVIDER"), cfg.get("LLM_MODEL"))

    def _init_providers(self, cfg) -> dict:
        """Initialize available providers based on configured API keys."""
        providers = {}
        if cfg.get("OPENAI_API_KEY"):
            providers["openai"] = OpenAIProvider(
                cfg["OPENAI_API_KEY"], self.timeout_seconds, cfg.get("OPENAI_API_BASE_URL"),
            )
        if cfg.get("ANTHROPIC_API_KEY"):
            providers["anthropic"] = AnthropicProvider(cfg["ANTHROPIC_API_KEY"], self.timeout_seconds)
        if cfg.get("GEMINI_API_KEY"):
            providers["gemini"] = GeminiProvider(cfg["GEMINI_API_KEY"], self.timeout_seconds)
        return providers

    def _select(self, preferred: str | None, model: str | None) -> tuple[str | None, str | None]:
        """Resolve (provider_name, model); (None, None) when nothing is registered."""
        if model and self.PROVIDER_MAP.get(model) in self._providers:
            return self.PROVIDER_MAP[model], model
        if preferred and preferred in self._providers:
            name = preferred
        elif self._providers:
            name = next(iter(self._providers))
        else:
            return None, None
        return name, model or self.DEFAULT_MODELS.get(name, "")

    @property
    def is_configured(self) -> bool:
        return self._provider_name is not None

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def generate(
        self,
        messages: list,
        required_keys,
        fallback: dict,
        *,
        purpose: str = "",
    ) -> GenerationResult:
        """
        Request a JSON object containing every key in ``required_keys``.

        An attempt fails on provider exception (including timeout and
        non-success status), empty body, non-object JSON or a missing key.
        Values are not type-checked: an empty string satisfies a key.

        Returns:
            GenerationResult — never raises.
        """
        if not self.is_configured:
            logger.debug("LLM not configured — fallback content for %s", purpose or "request")
            return GenerationResult(ok=False, content=fallback, attempts=0, error="not configured")

        provider = self._providers[self._provider_name]
        last_error = None

        for attempt in range(1, self.max_retries + 1):
            try:
                raw = provider.chat(
                    messages, self.model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    json_mode=True,
                )
                content = parse_json_object(raw.get("content"))
                missing = [k for k in required_keys if k not in content]
                if missing:
                    raise ValueError(f"missing required keys: {', '.join(missing)}")
                return GenerationResult(ok=True, content=content, attempts=attempt)

            except Exception as e:
                last_error = str(e)
                logger.warning(
                    "LLM %s attempt %d/%d failed (%s): %s",
                    purpose or "call", attempt, self.max_retries, self._provider_name, e,
                )
                if attempt < self.max_retries and self.backoff_seconds > 0:
                    _backoff_wait(self.backoff_seconds * attempt)

        logger.info(
            "LLM %s exhausted %d attempts — using fallback content",
            purpose or "call", self.max_retries,
        )
        return GenerationResult(ok=False, content=fallback, attempts=self.max_retries, error=last_error)


def get_gateway() -> LLMGateway:
    """Return the app-scoped gateway, built lazily from ``current_app.config``."""
    gateway = current_app.extensions.get("llm_gateway")
    if gateway is None:
        gateway = LLMGateway(current_app.config)
        current_app.extensions["llm_gateway"] = gateway
    return gateway
