"""Caption generation facade over the Groq chat-completions API.

Opaque to the metering layer: it either returns a GenerationResult or raises
GenerationError. Timeouts and provider failures never charge quota because the
entitlement gate only commits after this returns.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import groq

from captionai.core.errors import GenerationError
from captionai.features.generation.prompts import (
    BOOST_PROMPT,
    GENERATE_PROMPT,
    OUTPUT_FORMAT,
    PLATFORM_LIMITS,
    brand_voice_block,
)

logger = logging.getLogger(__name__)

_NUMBERED_LINE = re.compile(r"^\s*\d+[.):]\s*(.+?)\s*$")
_HASHTAG = re.compile(r"#\w+", re.UNICODE)
_SECTION = re.compile(r"^\s*#{2,}\s*(captions|hashtags)\s*$", re.IGNORECASE)
_QUOTES = "\"'“”"


@dataclass(frozen=True)
class CaptionBrief:
    idea: str
    platform: str
    tone: str
    brand_voice: Optional[str] = None


@dataclass(frozen=True)
class GenerationResult:
    result: str
    captions: List[str] = field(default_factory=list)
    hashtags: List[str] = field(default_factory=list)


def _clamp(text: str, limit: Optional[int]) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."


def _split_sections(text: str) -> Tuple[List[str], List[str]]:
    captions_block: List[str] = []
    hashtags_block: List[str] = []
    current = None
    for line in text.splitlines():
        header = _SECTION.match(line)
        if header:
            current = header.group(1).lower()
            continue
        if current == "captions":
            captions_block.append(line)
        elif current == "hashtags":
            hashtags_block.append(line)
    if not captions_block and not hashtags_block:
        lines = text.splitlines()
        return lines, lines
    return captions_block, hashtags_block


def parse_result(text: str, platform: Optional[str] = None) -> Tuple[List[str], List[str]]:
    """Extract numbered captions and unique hashtags from the model's markdown."""
    captions_block, hashtags_block = _split_sections(text)
    limit = PLATFORM_LIMITS.get((platform or "").lower())

    captions = []
    for line in captions_block:
        match = _NUMBERED_LINE.match(line)
        if not match:
            continue
        caption = match.group(1).strip().strip(_QUOTES).strip()
        if caption:
            captions.append(_clamp(caption, limit))

    hashtags: List[str] = []
    seen = set()
    for line in hashtags_block:
        for tag in _HASHTAG.findall(line):
            key = tag.lower()
            if key not in seen:
                seen.add(key)
                hashtags.append(tag)
    return captions, hashtags


class CaptionGenerator:
    """Groq-backed caption writer."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "llama-3.3-70b-versatile",
        timeout: float = 30.0,
        client=None,
    ):
        self.model = model
        self.timeout = timeout
        if client is not None:
            self._client = client
        elif api_key:
            self._client = groq.Groq(api_key=api_key, timeout=timeout, max_retries=1)
        else:
            self._client = None

    def generate(self, brief: CaptionBrief) -> GenerationResult:
        prompt = GENERATE_PROMPT.format(
            platform=brief.platform,
            tone=brief.tone,
            idea=brief.idea,
            brand_voice_block=brand_voice_block(brief.brand_voice),
            output_format=OUTPUT_FORMAT,
        )
        text = self._complete(prompt, temperature=0.7, max_tokens=700, action="generate")
        captions, hashtags = parse_result(text, brief.platform)
        return GenerationResult(result=text, captions=captions, hashtags=hashtags)

    def boost(self, brief: CaptionBrief, captions: str) -> GenerationResult:
        prompt = BOOST_PROMPT.format(
            platform=brief.platform,
            tone=brief.tone,
            idea=brief.idea,
            brand_voice_block=brand_voice_block(brief.brand_voice),
            captions=captions,
            output_format=OUTPUT_FORMAT,
        )
        text = self._complete(prompt, temperature=0.8, max_tokens=800, action="boost")
        boosted, hashtags = parse_result(text, brief.platform)
        return GenerationResult(result=text, captions=boosted, hashtags=hashtags)

    def _complete(self, prompt: str, *, temperature: float, max_tokens: int, action: str) -> str:
        if self._client is None:
            raise GenerationError("Generation is not configured (GROQ_API_KEY missing)")
        try:
            completion = self._client.chat.completions.create(
                messages=[{"role": "user", "content": prompt}],
                model=self.model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except groq.GroqError as e:
            logger.error(f"[generation] Groq {action} error: {type(e).__name__}")
            raise GenerationError(f"AI {action} failed") from e

        choices = getattr(completion, "choices", None) or []
        text = choices[0].message.content if choices else None
        if not text or not text.strip():
            raise GenerationError(f"AI {action} returned no content")
        return text.strip()


async def run_with_timeout(fn, *args, timeout: float):
    """Run a blocking generator call off the event loop with a hard deadline."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error("[generation] timed out", extra={"timeout_s": timeout})
        raise GenerationError("AI generation timed out") from e
