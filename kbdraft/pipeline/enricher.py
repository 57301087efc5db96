"""
Enricher: best-effort summaries.

Turns raw item content into a short summary through the configured LLM
provider. The provider call is bounded by a timeout and any failure, or an
empty answer, falls back to the raw content unmodified.

Summaries are untrusted text. to_storage_html() is the only way they reach
page or mail markup.
"""

import asyncio
import html
import logging
import re
from typing import Optional

from ..common.llm_client import LLMClient

logger = logging.getLogger("kbdraft.pipeline.enricher")


SUMMARY_INSTRUCTION = """You summarize internal support emails and tickets for a knowledge base.

Write a short factual summary: what the issue was, what was done, and the outcome.
Use plain sentences separated into short paragraphs. No markdown, no headings, no preamble."""

_BLANK_LINE = re.compile(r"\n\s*\n")


def to_storage_html(text: str) -> str:
    """
    Render untrusted text as escaped paragraphs.

    One <p> per blank-line-separated block; single newlines inside a block
    become <br />. Deterministic, and never passes markup through.
    """
    if not text:
        return ""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    paragraphs = []
    for block in _BLANK_LINE.split(normalized):
        block = block.strip()
        if not block:
            continue
        lines = [html.escape(line.strip()) for line in block.split("\n")]
        paragraphs.append("<p>" + "<br />".join(lines) + "</p>")
    return "".join(paragraphs)


class Enricher:
    """
    Summary generator with a raw-content fallback.

    With no available LLM client the enricher passes content through, so the
    pipeline keeps running without a summarization backend.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        timeout: float = 30.0,
        max_tokens: int = 400,
        max_input_chars: int = 8000,
        instruction: str = SUMMARY_INSTRUCTION,
    ):
        self._llm = llm_client
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._max_input_chars = max_input_chars
        self._instruction = instruction

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    async def summarize(self, raw_content: str) -> str:
        """
        Summarize `raw_content`.

        Returns:
            The generated summary, or `raw_content` verbatim on timeout,
            provider error, unavailable backend or empty result.
        """
        if not raw_content or not raw_content.strip():
            return raw_content or ""
        if not self.is_available:
            return raw_content

        prompt = raw_content[: self._max_input_chars]
        try:
            summary = await asyncio.wait_for(
                asyncio.to_thread(
                    self._llm.generate,
                    prompt,
                    system=self._instruction,
                    max_tokens=self._max_tokens,
                    timeout=self._timeout,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Summary timed out after %.1fs, using raw content", self._timeout)
            return raw_content
        except Exception as e:
            logger.warning("Summary failed (%s), using raw content", e)
            return raw_content

        if not isinstance(summary, str) or not summary.strip():
            logger.info("Empty summary returned, using raw content")
            return raw_content
        return summary.strip()
