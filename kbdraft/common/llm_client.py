"""
Provider-agnostic LLM client for kbdraft.

Supports Anthropic, OpenAI, and Google Gemini behind one text-generation
call. Calls are blocking; async callers run them in a worker thread.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional

from .config import LLMConfig

logger = logging.getLogger("kbdraft.common.llm_client")

# Preference order when the configured provider is "auto"
_AUTO_ORDER = ("anthropic", "openai", "google")


def resolve_provider(llm_config: LLMConfig) -> str:
    """Turn provider "auto" into the first provider that has an API key.

    Returns the configured provider unchanged when it is not "auto", and
    "anthropic" when no key is set at all (the client then reports itself
    unavailable).
    """
    provider = (llm_config.provider or "auto").lower()
    if provider != "auto":
        return provider
    for candidate in _AUTO_ORDER:
        if getattr(llm_config, f"{candidate}_api_key", ""):
            return candidate
    return "anthropic"


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self._client: Any = None
        self._google_models: Dict[str, Any] = {}

        if self.provider == "auto":
            raise ValueError(
                '"auto" provider must be resolved before creating LLMClient. '
                "Use resolve_provider() or LLMClient.from_config()."
            )

        keys = {
            "anthropic": anthropic_api_key,
            "openai": openai_api_key,
            "google": google_api_key,
        }
        builder = getattr(self, f"_build_{self.provider}", None)
        if builder is None:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return

        api_key = keys[self.provider]
        if not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        try:
            self._client = builder(api_key)
        except ImportError as e:
            logger.warning("%s SDK not installed: %s", self.provider, e)
        except Exception as e:
            logger.warning("Failed to initialize %s client: %s", self.provider, e)

    @classmethod
    def from_config(cls, llm_config: LLMConfig) -> "LLMClient":
        provider = resolve_provider(llm_config)
        return cls(
            provider=provider,
            model=getattr(llm_config, f"{provider}_model", ""),
            anthropic_api_key=llm_config.anthropic_api_key or None,
            openai_api_key=llm_config.openai_api_key or None,
            google_api_key=llm_config.google_api_key or None,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------ #
    # Provider SDKs (imported lazily)
    # ------------------------------------------------------------------ #

    @staticmethod
    def _build_anthropic(api_key: str) -> Any:
        import anthropic

        return anthropic.Anthropic(api_key=api_key)

    @staticmethod
    def _build_openai(api_key: str) -> Any:
        from openai import OpenAI

        return OpenAI(api_key=api_key)

    @staticmethod
    def _build_google(api_key: str) -> Any:
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        return genai  # models are created per system instruction

    # ------------------------------------------------------------------ #
    # Generation
    # ------------------------------------------------------------------ #

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> str:
        """Generate text for `prompt`.

        Returns an empty string when the provider answers without any
        generated content (no content blocks, choices or candidates).
        """
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

        generator = getattr(self, f"_generate_{self.provider}", None)
        if generator is None:
            raise RuntimeError(f"Unsupported LLM provider: {self.provider}")
        return generator(prompt, system, max_tokens, timeout)

    def _generate_anthropic(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        extra = {"system": system} if system else {}
        response = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
            **extra,
        )
        if not response.content:
            return ""
        return (getattr(response.content[0], "text", "") or "").strip()

    def _generate_openai(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=messages,
            timeout=timeout,
        )
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    def _generate_google(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        cache_key = hashlib.md5((system or "").encode()).hexdigest()
        model = self._google_models.get(cache_key)
        if model is None:
            options = {"model_name": self.model}
            if system:
                options["system_instruction"] = system
            model = self._client.GenerativeModel(**options)
            self._google_models[cache_key] = model

        response = model.generate_content(
            prompt,
            generation_config={"max_output_tokens": max_tokens},
            request_options={"timeout": timeout},
        )
        if not getattr(response, "candidates", None):
            return ""
        return (response.text or "").strip()
