"""Narration script generation under a word budget."""

from __future__ import annotations

import asyncio
import logging
import math
import re
from typing import Any, List, Optional
from urllib.parse import urlparse

from openai import OpenAI

from config import require_openai_api_key, settings

logger = logging.getLogger(__name__)

NARRATION_PROMPT = """Create a concise summary of this article for audio narration.

Requirements:
- Keep it under {max_words} words total.
- Write in plain, conversational sentences that read naturally out loud.
- Lead with the most important finding, then the key facts, numbers and takeaways.
- No lists, headings, markdown, URLs or abbreviations that are awkward to speak.
- The article comes from {source}.

ARTICLE:
{text}"""

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")


class SummarizationError(Exception):
    """Raised when no narration script could be produced."""


def count_words(text: str) -> int:
    return len((text or "").split())


def truncate_source(text: str, max_words: int, max_chars: int) -> str:
    """Bound the source handed to the model, cutting on a word boundary."""
    # Words beyond what a model could reasonably compress are never sent.
    word_limit = max(max_words * 40, max_words)
    words = (text or "").split()
    if len(words) > word_limit:
        words = words[:word_limit]
    bounded = " ".join(words)
    if len(bounded) > max_chars:
        bounded = bounded[:max_chars].rsplit(" ", 1)[0]
    return bounded


def extractive_summary(text: str, max_words: int) -> str:
    """Whole-sentence summary of the source that fits within max_words."""
    sentences: List[str] = [s.strip() for s in _SENTENCE_RE.findall(text or "") if s.strip()]
    picked: List[str] = []
    used = 0
    for sentence in sentences:
        words = count_words(sentence)
        if used + words > max_words:
            if picked:
                break
            continue
        picked.append(sentence)
        used += words
    if picked:
        return " ".join(picked)
    # A single sentence longer than the whole budget cannot be kept whole.
    words = (text or "").split()[:max_words]
    return " ".join(words).rstrip(",;:") + "." if words else ""


def _source_label(url: Optional[str]) -> str:
    if not url:
        return "the original source"
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else (host or "the original source")


class NarrationSummarizer:
    """Summarization stage backed by an OpenAI chat completion."""

    def __init__(
        self,
        client: Any = None,
        model: Optional[str] = None,
        max_words: Optional[int] = None,
        source_max_chars: Optional[int] = None,
    ):
        self.client = client if client is not None else OpenAI(api_key=require_openai_api_key())
        self.model = model or settings.SUMMARY_MODEL
        self.max_words = max_words or settings.SUMMARY_MAX_WORDS
        self.source_max_chars = source_max_chars or settings.SUMMARY_SOURCE_MAX_CHARS

    def summarize(self, text: str, *, max_words: Optional[int] = None, source_url: Optional[str] = None) -> str:
        budget = max_words or self.max_words
        cleaned = " ".join((text or "").split())
        if not cleaned:
            raise SummarizationError("No content to summarize")

        if count_words(cleaned) <= budget:
            return cleaned

        source = truncate_source(cleaned, budget, self.source_max_chars)
        logger.info(
            "Summarizing %s words (sent %s) to at most %s words with %s",
            count_words(cleaned),
            count_words(source),
            budget,
            self.model,
        )
        prompt = NARRATION_PROMPT.format(max_words=budget, source=_source_label(source_url), text=source)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=math.ceil(budget * 1.5),
                temperature=0.3,
            )
        except Exception as exc:
            raise SummarizationError(f"Summarization failed: {exc}") from exc

        script = ""
        if response.choices:
            script = (response.choices[0].message.content or "").strip()
        if not script:
            raise SummarizationError("Failed to generate summary")

        if count_words(script) > budget:
            logger.warning(
                "Generated script has %s words (budget %s); using extractive summary",
                count_words(script),
                budget,
            )
            return extractive_summary(source, budget)

        logger.info("Generated %s word narration script", count_words(script))
        return script

    async def summarize_async(self, text: str, *, max_words: Optional[int] = None, source_url: Optional[str] = None) -> str:
        return await asyncio.to_thread(self.summarize, text, max_words=max_words, source_url=source_url)
