"""AI-assisted selection among ambiguous competitor candidates."""

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import openai
from openai import AsyncOpenAI

from pricewatch.ai.rate_limiter import SlidingWindowRateLimiter, get_ai_rate_limiter, retry_delay
from pricewatch.config import settings
from pricewatch.ingest.base import SourceListing
from pricewatch.metrics import record_ai_request

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You match retail products. Pick the candidate that is the same product as the "
    "catalog item (same brand, line, variant and size). Respond ONLY with JSON: "
    '{"index": number, "confidence": number, "reason": string}. '
    "If no candidate matches, use index -1 and confidence 0."
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class AISelection:
    """Candidate chosen by the model."""

    index: int
    confidence: float
    listing: SourceListing
    reason: str = ""


def build_prompt(description: str, candidates: Sequence[SourceListing]) -> str:
    """User prompt listing the catalog item and numbered candidates."""
    lines = ["Catalog product:", description, "", "Candidates:"]
    for i, candidate in enumerate(candidates):
        lines.append(
            f"[{i}] Brand: {candidate.brand or ''} | Name: {candidate.name or ''} | "
            f"Id: {candidate.product_id or candidate.external_id or ''} | "
            f"List: {candidate.list_price if candidate.list_price is not None else ''} | "
            f"Promo: {candidate.promo_price if candidate.promo_price is not None else ''}"
        )
    return "\n".join(lines)


def extract_json_object(text: Optional[str]) -> Optional[dict[str, Any]]:
    """Parse the first JSON object in a model reply (tolerates ``` fences)."""
    if not text:
        return None

    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class AIDisambiguator:
    """
    Chooses among candidates via an OpenAI chat completion.

    The shared rate limiter admits every attempt, retries included. HTTP 429
    is retried with Retry-After or exponential backoff; every other failure
    means "no selection".
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep=None,
    ):
        self._client = client
        self._rate_limiter = rate_limiter
        self.model = model or settings.ai_model
        self.max_retries = settings.ai_max_retries if max_retries is None else max_retries
        self.base_delay = settings.ai_retry_base_delay_seconds if base_delay is None else base_delay
        self.max_delay = settings.ai_retry_max_delay_seconds if max_delay is None else max_delay
        self._sleep = sleep

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = get_ai_rate_limiter()
        return self._rate_limiter

    def _get_client(self) -> AsyncOpenAI:
        """Get or create the OpenAI client."""
        if self._client is None:
            if not settings.openai_api_key:
                raise ValueError("OpenAI API key not configured")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url or None,
                timeout=settings.ai_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def _wait(self, seconds: float) -> None:
        await (self._sleep or asyncio.sleep)(seconds)

    async def select(
        self, description: str, candidates: Sequence[SourceListing]
    ) -> Optional[AISelection]:
        """
        Ask the model which candidate matches the description.

        Args:
            description: Local product description
            candidates: Ranked candidates (top-K)

        Returns:
            AISelection, or None when the model declines or the call fails
        """
        if not candidates:
            return None

        try:
            client = self._get_client()
        except ValueError as e:
            logger.warning(f"AI disambiguation unavailable: {e}")
            record_ai_request("unavailable")
            return None

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(description, candidates)},
        ]

        for attempt in range(self.max_retries + 1):
            waited = await self.rate_limiter.acquire()
            try:
                response = await client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=0,
                    max_tokens=settings.ai_max_tokens,
                )
            except openai.RateLimitError as e:
                if attempt >= self.max_retries:
                    logger.warning(f"AI rate limited, retries exhausted after {attempt + 1} attempts")
                    record_ai_request("rate_limited", waited)
                    return None
                retry_after = e.response.headers.get("retry-after") if e.response is not None else None
                delay = retry_delay(retry_after, attempt, self.base_delay, self.max_delay)
                logger.warning(f"AI returned 429, retrying in {delay:.1f}s (attempt {attempt + 1})")
                record_ai_request("retry", waited)
                await self._wait(delay)
                continue
            except Exception as e:
                logger.warning(f"AI disambiguation call failed: {e}")
                record_ai_request("error", waited)
                return None

            content = response.choices[0].message.content if response.choices else None
            selection = self._parse_selection(content, candidates)
            record_ai_request("selected" if selection else "declined", waited)
            return selection

        return None

    @staticmethod
    def _parse_selection(
        content: Optional[str], candidates: Sequence[SourceListing]
    ) -> Optional[AISelection]:
        data = extract_json_object(content)
        if data is None:
            logger.warning(f"AI response is not a JSON object: {(content or '')[:200]}")
            return None

        index = data.get("index", -1)
        if isinstance(index, bool) or not isinstance(index, (int, float)):
            return None
        if not math.isfinite(index) or int(index) != index:
            return None
        index = int(index)
        if index < 0 or index >= len(candidates):
            return None

        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            return None
        if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
            logger.warning(f"AI confidence out of range: {confidence}")
            return None

        return AISelection(
            index=index,
            confidence=confidence,
            listing=candidates[index],
            reason=str(data.get("reason") or ""),
        )
