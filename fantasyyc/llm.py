"""
fantasyyc/llm.py - Classifier chain with OpenAI-compatible model tiers.

Each tier is one chat model behind an OpenAI-compatible endpoint (OpenRouter
by default). A tier gets the entity name and the whole item batch and must
answer with a JSON array holding one {"category", "score", "headline"} object
per item, in order. Anything else counts as a failure and the chain moves on.
The rule classifier always closes the chain, so a batch never goes unscored.
"""

import json
import logging
import re
import threading
import time

from .classifier import (
    MAX_EVENT_SCORE,
    ClassificationError,
    ClassificationResult,
    Classifier,
    ContentItem,
    EventCategory,
    RuleBasedClassifier,
    clamp_score,
    fallback_headline,
)

logger = logging.getLogger(__name__)

HEADLINE_MAX = 80

SYSTEM_PROMPT = (
    "You classify startup social media posts into scored events. "
    "Always respond with a valid JSON array and nothing else."
)

_PROMPT_TEMPLATE = """Classify each post by {entity} into exactly one event category.

Categories and typical scores:
- Funding: 500 + 100 per $1M raised (seed max 800, series max 1500)
- Partnership: 300, +50 per major partner (AWS, Google, Microsoft, Meta, Apple, NVIDIA, OpenAI)
- KeyHire: 150, +50 for C-level
- Revenue: 400 + 100 per $1M (max 1500)
- ProductLaunch: 250, +100 if viral
- Acquisition: 2000
- MediaMention: 200, +100 for a major outlet
- Growth: 200 + 50 per 10x (max 1000)
- Engagement: 50 to 500 for anything else

Return ONLY a JSON array with {count} objects, one per post, in the same order:
[{{"category": "<category>", "score": <number 0-{max_score}>, "headline": "<max 60 chars>"}}]

Posts:
{posts}"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _require_openai():
    """Import and return the OpenAI client class, raising a clear error if missing."""
    try:
        from openai import OpenAI
        return OpenAI
    except ImportError:
        raise ImportError(
            "openai is required for model classifier tiers. "
            "Install it with: pip install fantasyyc"
        )


def build_prompt(entity_name: str, items: list[ContentItem]) -> str:
    lines = []
    for i, item in enumerate(items, 1):
        text = " ".join(item.text.split())
        lines.append(f"{i}. (likes {item.like_count}, reposts {item.repost_count}) {text}")
    return _PROMPT_TEMPLATE.format(
        entity=entity_name,
        count=len(items),
        max_score=MAX_EVENT_SCORE,
        posts="\n".join(lines),
    )


def parse_response(content: str | None, items: list[ContentItem], tier: str) -> list[ClassificationResult]:
    """Validate a model answer against the batch. Raises ClassificationError on any defect."""
    if not content or not content.strip():
        raise ClassificationError(f"{tier}: empty response")

    cleaned = _FENCE.sub("", content.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"{tier}: unparseable JSON ({e})") from e

    if not isinstance(data, list):
        raise ClassificationError(f"{tier}: expected a JSON array, got {type(data).__name__}")
    if len(data) != len(items):
        raise ClassificationError(f"{tier}: {len(data)} results for {len(items)} items")

    results = []
    for index, (entry, item) in enumerate(zip(data, items)):
        if not isinstance(entry, dict):
            raise ClassificationError(f"{tier}: result {index} is not an object")
        try:
            category = EventCategory.parse(entry.get("category", ""))
        except ValueError as e:
            raise ClassificationError(f"{tier}: result {index}: {e}") from e

        score = entry.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ClassificationError(f"{tier}: result {index} has non-numeric score {score!r}")

        headline = entry.get("headline")
        if isinstance(headline, str) and headline.strip():
            headline = headline.strip()[:HEADLINE_MAX]
        else:
            headline = fallback_headline(item.text) if item.text else None

        results.append(
            ClassificationResult(
                category=category,
                score=clamp_score(score),
                headline=headline,
                tier=tier,
            )
        )
    return results


class ModelClassifier:
    """One chat-completion tier.

    Args:
        model: Model name as the endpoint knows it (e.g. "openai/gpt-4o-mini").
        api_key: Endpoint key.
        base_url: OpenAI-compatible endpoint root.
        timeout: Per-request timeout in seconds.
        client: Pre-built client (tests inject a fake here).
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 45.0,
        client=None,
    ):
        self.model = model
        self.name = f"model:{model}"
        if client is None:
            OpenAI = _require_openai()
            client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.client = client

    def classify_batch(
        self, entity_name: str, items: list[ContentItem]
    ) -> list[ClassificationResult]:
        if not items:
            return []
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(entity_name, items)},
                ],
                temperature=0.2,
                max_tokens=150 * len(items) + 200,
            )
            content = response.choices[0].message.content if response.choices else None
        except Exception as e:
            raise ClassificationError(f"{self.name}: request failed: {e}") from e
        return parse_response(content, items, self.name)


class ClassifierChain:
    """Ordered classifier strategies. First valid answer wins; rules close the chain."""

    def __init__(
        self,
        tiers: list[Classifier] | None = None,
        fallback: Classifier | None = None,
        call_delay: float = 0.0,
    ):
        self.tiers = list(tiers or [])
        self.fallback = fallback or RuleBasedClassifier()
        self.call_delay = call_delay
        self._sleep = time.sleep
        self._clock = time.monotonic
        # Shared by every batch on this chain, including concurrent pipeline workers
        self._pace_lock = threading.Lock()
        self._next_call = 0.0

    @classmethod
    def from_config(cls, classifier_config) -> "ClassifierChain":
        """Model tiers for each configured model, or rules only when no key is set."""
        if not classifier_config.api_key:
            logger.warning("No classifier API key set, using rule-based classification only")
            return cls()
        tiers = [
            ModelClassifier(
                model,
                api_key=classifier_config.api_key,
                base_url=classifier_config.base_url,
                timeout=classifier_config.timeout,
            )
            for model in classifier_config.models
        ]
        return cls(tiers, call_delay=classifier_config.call_delay)

    def _pace(self) -> None:
        """Block until call_delay has passed since the previous model call from any thread."""
        if self.call_delay <= 0:
            return
        with self._pace_lock:
            wait = self._next_call - self._clock()
            if wait > 0:
                self._sleep(wait)
            self._next_call = self._clock() + self.call_delay

    def classify_batch(
        self, entity_name: str, items: list[ContentItem]
    ) -> list[ClassificationResult]:
        if not items:
            return []

        for tier in self.tiers:
            self._pace()
            try:
                results = tier.classify_batch(entity_name, items)
            except ClassificationError as e:
                logger.warning(f"Classifier tier {tier.name} failed for {entity_name}: {e}")
                continue
            except Exception as e:
                logger.warning(f"Classifier tier {tier.name} raised for {entity_name}: {e}")
                continue
            if len(results) != len(items):
                logger.warning(
                    f"Classifier tier {tier.name} returned {len(results)} results "
                    f"for {len(items)} {entity_name} items"
                )
                continue
            for result in results:
                result.score = clamp_score(result.score)
            logger.info(f"Classified {len(items)} {entity_name} items with {tier.name}")
            return results

        results = self.fallback.classify_batch(entity_name, items)
        logger.info(f"Classified {len(items)} {entity_name} items with {self.fallback.name}")
        return results
