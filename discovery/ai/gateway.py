"""
Workshop Discovery
LLM Gateway.

Provider-agnostic LLM router with:
    - Multi-provider support (Anthropic Claude, OpenAI, Gemini, local stub)
    - Auto-retry with exponential backoff
    - Token tracking & cost logging (AIUsageLog)

The gateway is constructed explicitly and handed to the components that need
it (evidence interpreter, checklist generator); there is no module-level client.

Usage:
    from discovery.ai.gateway import LLMGateway
    gw = LLMGateway()
    result = gw.chat([{"role": "user", "content": "..."}], purpose="evidence_interpreter")
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod

from discovery.models import db
from discovery.models.ai import AIUsageLog, calculate_cost

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, timeout.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    def __init__(self):
        self.api_key = os.getenv("ANTHROPIC_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "claude-sonnet-4-20250514", **kwargs) -> dict:
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
            "max_tokens": kwargs.get("max_tokens", 4096),
            "temperature": kwargs.get("temperature", 0.0),
        }
        if system_msg:
            params["system"] = system_msg
        if kwargs.get("timeout"):
            params["timeout"] = kwargs["timeout"]

        response = client.messages.create(**params)

        return {
            "content": response.content[0].text,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider."""

    def __init__(self):
        self.api_key = os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai
            self._client = openai.OpenAI(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        client = self._get_client()
        params = {
            "model": model,
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", 4096),
            "temperature": kwargs.get("temperature", 0.0),
        }
        if kwargs.get("timeout"):
            params["timeout"] = kwargs["timeout"]
        response = client.chat.completions.create(**params)
        choice = response.choices[0]
        return {
            "content": choice.message.content,
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
        }


# ── Google Gemini Provider ────────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Environment:
        GEMINI_API_KEY: obtain at https://aistudio.google.com/apikey
    """

    def __init__(self):
        self.api_key = os.getenv("GEMINI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

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
            temperature=kwargs.get("temperature", 0.0),
            max_output_tokens=kwargs.get("max_tokens", 4096),
        )
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(model=model, contents=contents, config=config)

        prompt_tokens = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
        completion_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0

        return {
            "content": response.text or "",
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "model": model,
        }


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic, conservative responses.

    Evidence prompts always get an empty proposal: without a real model the
    stub never claims a value was obtained. Checklist-generation prompts get a
    small fixed checklist so the rest of the flow can be exercised offline.
    """

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        user_msg = ""
        for m in reversed(messages):
            if m["role"] == "user":
                user_msg = m["content"]
                break

        content = self._generate_stub_response(user_msg)
        return {
            "content": content,
            "prompt_tokens": len(user_msg.split()) * 2,  # rough estimate
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
        }

    @staticmethod
    def _generate_stub_response(user_msg: str) -> str:
        lower = user_msg.lower()

        if "output format: json array" in lower:
            return json.dumps([
                {
                    "item_text": "Number and locations of warehouses / distribution centers",
                    "importance": "critical",
                    "category": "Organizational Structure",
                    "suggested_question": "How many warehouses do you operate and where?",
                },
                {
                    "item_text": "Standard customer payment terms by segment",
                    "importance": "important",
                    "category": "Master Data",
                    "suggested_question": "What payment terms do you give each customer segment?",
                },
                {
                    "item_text": "Purchase order approval thresholds",
                    "importance": "important",
                    "category": "Compliance & Controls",
                    "suggested_question": "Which approval limits apply to purchase orders?",
                },
            ])

        return json.dumps({
            "obtained_items": [],
            "items_to_reset": [],
            "additional_findings": [],
        })


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all LLM calls.

    Features:
        - Provider routing based on model name
        - Auto-retry with exponential backoff
        - Token/cost tracking (flushed to AIUsageLog in the caller's transaction)

    Usage:
        gw = LLMGateway()
        result = gw.chat(
            messages=[{"role": "user", "content": "..."}],
            model="claude-sonnet-4-20250514",
            purpose="evidence_interpreter",
        )
    """

    # Model → provider mapping
    PROVIDER_MAP = {
        # Anthropic
        "claude-sonnet-4-20250514": "anthropic",
        "claude-3-5-haiku-20241022": "anthropic",
        # OpenAI
        "gpt-4o-mini": "openai",
        "gpt-4o": "openai",
        # Google Gemini
        "gemini-2.5-flash": "gemini",
        "gemini-2.5-pro": "gemini",
        # Local stub (dev/test)
        "local-stub": "local",
    }

    DEFAULT_CHAT_MODEL = os.getenv("LLM_DEFAULT_CHAT_MODEL", "claude-sonnet-4-20250514")

    def __init__(self, *, providers: dict | None = None, backoff_seconds: float = 1.0):
        self._providers: dict[str, LLMProvider] = {}
        self._backoff_seconds = backoff_seconds
        self._init_providers()
        if providers:
            self._providers.update(providers)

    def _init_providers(self):
        """Initialize available providers based on environment."""
        # Always register local stub
        self._providers["local"] = LocalStubProvider()

        # Register real providers if API keys present
        if os.getenv("ANTHROPIC_API_KEY"):
            self._providers["anthropic"] = AnthropicProvider()
        if os.getenv("OPENAI_API_KEY"):
            self._providers["openai"] = OpenAIProvider()
        if os.getenv("GEMINI_API_KEY"):
            self._providers["gemini"] = GeminiProvider()

    @property
    def available_providers(self) -> list[str]:
        return sorted(self._providers)

    def _get_provider(self, model: str) -> tuple[LLMProvider, str]:
        """
        Resolve model to provider. Falls back to local stub if real provider unavailable.
        Returns (provider, provider_name).
        """
        provider_name = self.PROVIDER_MAP.get(model, "local")

        if provider_name in self._providers:
            return self._providers[provider_name], provider_name

        logger.warning(
            "Provider '%s' not available (no API key?). Falling back to local stub for model '%s'.",
            provider_name, model,
        )
        return self._providers["local"], "local"

    def chat(
        self,
        messages: list,
        model: str | None = None,
        *,
        purpose: str = "",
        user: str = "system",
        session_id: int | None = None,
        max_retries: int = 3,
        **kwargs,
    ) -> dict:
        """
        Send a chat completion request with retry.

        Args:
            messages: Chat messages.
            model: Model identifier (defaults to DEFAULT_CHAT_MODEL).
            purpose: What the call is for (e.g. "evidence_interpreter").
            user: Who triggered the call.
            session_id: Associated discovery session.
            max_retries: Number of attempts before giving up.
            **kwargs: temperature, max_tokens, timeout passed to provider.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model, cost_usd,
                   latency_ms, provider}

        Raises:
            RuntimeError: when every attempt failed.
        """
        if model is None:
            model = self.DEFAULT_CHAT_MODEL

        provider, provider_name = self._get_provider(model)
        last_error = None

        for attempt in range(1, max(1, max_retries) + 1):
            start_time = time.time()
            try:
                result = provider.chat(messages, model, **kwargs)
                latency_ms = int((time.time() - start_time) * 1000)

                cost = calculate_cost(model, result["prompt_tokens"], result["completion_tokens"])
                result["cost_usd"] = cost
                result["latency_ms"] = latency_ms
                result["provider"] = provider_name

                self._log_usage(
                    provider=provider_name, model=model,
                    prompt_tokens=result["prompt_tokens"],
                    completion_tokens=result["completion_tokens"],
                    cost_usd=cost, latency_ms=latency_ms,
                    user=user, purpose=purpose, session_id=session_id,
                    success=True,
                )
                return result

            except Exception as e:
                last_error = e
                logger.warning("LLM call attempt %d/%d failed: %s", attempt, max_retries, e)

                if attempt < max_retries and self._backoff_seconds > 0:
                    backoff = min(self._backoff_seconds * 2 ** (attempt - 1), 4)
                    threading.Event().wait(backoff)

        self._log_usage(
            provider=provider_name, model=model,
            prompt_tokens=0, completion_tokens=0,
            cost_usd=0.0, latency_ms=0,
            user=user, purpose=purpose, session_id=session_id,
            success=False, error_message=str(last_error),
        )
        raise RuntimeError(f"LLM call failed after {max_retries} retries: {last_error}")

    # ── Internal Logging ──────────────────────────────────────────────────

    @staticmethod
    def _log_usage(*, provider, model, prompt_tokens, completion_tokens,
                   cost_usd, latency_ms, user, purpose, session_id,
                   success, error_message=None):
        """Persist a usage log record with flush so the caller keeps transaction control."""
        try:
            log = AIUsageLog(
                provider=provider, model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
                cost_usd=cost_usd, latency_ms=latency_ms,
                user=user, purpose=purpose, session_id=session_id,
                success=success, error_message=error_message,
            )
            db.session.add(log)
            db.session.flush()
        except Exception as e:
            logger.error("Failed to log AI usage: %s", e)
