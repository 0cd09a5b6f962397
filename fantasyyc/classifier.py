"""
fantasyyc/classifier.py - Content item types and the rule-based event classifier.

Every content item maps to exactly one scored event. The rule classifier
tests each category's keyword set, scores every category that matched, and
keeps the highest. Items with no event keywords fall back to an engagement
score built from like/repost/view counts.

The rule classifier is also the last strategy of the classifier chain
(see llm.py), so it implements the same batch interface as the model tiers
and never raises.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)

# ============================================================================
# Data Types
# ============================================================================


class EventCategory(str, Enum):
    FUNDING = "Funding"
    PARTNERSHIP = "Partnership"
    KEY_HIRE = "KeyHire"
    REVENUE = "Revenue"
    PRODUCT_LAUNCH = "ProductLaunch"
    ACQUISITION = "Acquisition"
    MEDIA_MENTION = "MediaMention"
    GROWTH = "Growth"
    ENGAGEMENT = "Engagement"

    @classmethod
    def parse(cls, raw: str) -> "EventCategory":
        """Lenient lookup: "key_hire", "KEY HIRE" and "KeyHire" all resolve."""
        key = re.sub(r"[\s_\-]", "", str(raw)).lower()
        for category in cls:
            if category.value.lower() == key:
                return category
        raise ValueError(f"Unknown event category: {raw!r}")


@dataclass
class ContentItem:
    """One post authored by a tracked entity."""

    id: str
    text: str
    created_at: datetime | None = None
    like_count: int = 0
    repost_count: int = 0
    view_count: int = 0
    reply_count: int = 0
    # Noise markers, filled by the content source parser
    is_reply: bool = False
    in_reply_to_id: str | None = None
    is_repost: bool = False
    quoted_id: str | None = None


@dataclass
class ClassificationResult:
    """The single scored event an item maps to."""

    category: EventCategory
    score: float
    headline: str | None = None
    details: str = ""
    tier: str = "rules"  # provenance, logged only

    def to_event(self) -> dict:
        return {
            "type": self.category.value,
            "score": self.score,
            "headline": self.headline,
            "details": self.details,
        }


class ClassificationError(RuntimeError):
    """Raised by a classifier tier whose output can't be trusted."""


class Classifier(Protocol):
    """A classification strategy. Returns one result per input item, in order."""

    name: str

    def classify_batch(
        self, entity_name: str, items: list[ContentItem]
    ) -> list[ClassificationResult]: ...


# ============================================================================
# Scoring rules
# ============================================================================

# Highest score any single event may carry (the acquisition base).
MAX_EVENT_SCORE = 2000

FUNDING_BASE = 500
FUNDING_PER_MILLION = 100
FUNDING_SEED_MAX = 800
FUNDING_SERIES_MAX = 1500

PARTNERSHIP_BASE = 300
PARTNERSHIP_PER_MAJOR = 50
MAJOR_PARTNERS = ("aws", "amazon", "google", "microsoft", "meta", "apple", "nvidia", "openai")

KEY_HIRE_BASE = 150
KEY_HIRE_C_LEVEL = 50
C_LEVEL_TITLES = ("ceo", "cto", "cpo", "cfo", "coo", "vp", "chief", "head of")

REVENUE_BASE = 400
REVENUE_PER_MILLION = 100
REVENUE_MAX = 1500

LAUNCH_BASE = 250
LAUNCH_VIRAL_BONUS = 100
LAUNCH_VIRAL_LIKES = 1000

ACQUISITION_BASE = 2000

MEDIA_BASE = 200
MEDIA_MAJOR_BONUS = 100
MAJOR_OUTLETS = ("techcrunch", "forbes", "wsj", "nytimes", "bloomberg", "reuters")

GROWTH_BASE = 200
GROWTH_PER_10X = 50
GROWTH_MAX = 1000

ENGAGEMENT_BASE = 50
ENGAGEMENT_PER_THOUSAND_LIKES = 1
ENGAGEMENT_PER_REPOST = 2
ENGAGEMENT_PER_THOUSAND_VIEWS = 0.1
ENGAGEMENT_MAX = 500

# Keyword sets. English first, then ru/es/fr/de variants seen in founder posts.
KEYWORDS: dict[EventCategory, tuple[str, ...]] = {
    EventCategory.FUNDING: (
        "raised", "raise", "funding", "seed round", "pre-seed", "series a", "series b",
        "series c", "series d", "investment", "backed by", "led by",
        "привлекли", "раунд", "инвестиц", "financiación", "ronda", "levée de fonds",
        "finanzierungsrunde",
    ),
    EventCategory.PARTNERSHIP: (
        "partner", "partnership", "collaboration", "collab", "integrated with",
        "integration", "teamed up",
        "партнер", "партнёр", "alianza", "socio", "partenariat", "partnerschaft",
    ),
    EventCategory.KEY_HIRE: (
        "hired", "joined", "joins", "welcome", "joining", "new hire", "appointed",
        "присоединил", "назначен", "se une", "nombrado", "rejoint", "neuer",
    ),
    EventCategory.REVENUE: (
        "arr", "mrr", "revenue", "sales", "profitable",
        "выручк", "ingresos", "chiffre d'affaires", "umsatz",
    ),
    EventCategory.PRODUCT_LAUNCH: (
        "launched", "launch", "launching", "now live", "is live", "beta",
        "announcing", "introducing", "released", "shipping", "shipped",
        "запуск", "запустили", "lanzamiento", "lanzamos", "lancement", "veröffentlicht",
    ),
    EventCategory.ACQUISITION: (
        "acquired", "acquisition", "merger", "acquires", "acquiring",
        "приобрел", "поглощени", "adquisición", "adquirido", "rachat", "übernahme",
    ),
    EventCategory.MEDIA_MENTION: (
        "featured", "covered", "article", "interview", "podcast", "press",
        "статья", "интервью", "artículo", "entrevista", "reportage",
    ),
    EventCategory.GROWTH: (
        "users", "signups", "sign-ups", "growth", "milestone", "customers", "downloads",
        "пользовател", "рост", "usuarios", "crecimiento", "utilisateurs", "nutzer",
    ),
}

# Evaluation order; also the tie-break order when two categories score the same.
_CATEGORY_ORDER = [c for c in EventCategory if c is not EventCategory.ENGAGEMENT]


def _keyword_pattern(keyword: str) -> re.Pattern:
    # Short acronyms (arr, mrr, vp) need a whole-word match, longer stems
    # match as word prefixes so "launch" also hits "launched".
    escaped = re.escape(keyword)
    if len(keyword) <= 3:
        return re.compile(rf"(?<!\w){escaped}(?!\w)", re.IGNORECASE)
    return re.compile(rf"(?<!\w){escaped}", re.IGNORECASE)


_PATTERNS: dict[EventCategory, list[re.Pattern]] = {
    category: [_keyword_pattern(k) for k in words] for category, words in KEYWORDS.items()
}


def matches_category(text: str, category: EventCategory) -> bool:
    return any(p.search(text) for p in _PATTERNS.get(category, ()))


# ============================================================================
# Numeric extraction
# ============================================================================

_NUMBER = r"(?<![\d.,])(\d{1,3}(?:,\d{3})+(?!\d)|\d+(?:[.,]\d+)?)"

_UNIT_TO_MILLIONS = {
    "k": 0.001, "thousand": 0.001, "тыс": 0.001,
    "m": 1.0, "mm": 1.0, "mn": 1.0, "million": 1.0, "millions": 1.0, "млн": 1.0,
    "millones": 1.0, "mio": 1.0,
    "b": 1000.0, "bn": 1000.0, "billion": 1000.0, "billions": 1000.0, "млрд": 1000.0,
    "milliard": 1000.0, "milliards": 1000.0, "mrd": 1000.0,
}

_UNITS = "|".join(sorted((re.escape(u) for u in _UNIT_TO_MILLIONS), key=len, reverse=True))

_AMOUNT_PATTERNS = (
    # $4.1M, $ 10 million, €2,5M
    re.compile(rf"[$€£]\s?{_NUMBER}\s*({_UNITS})(?!\w)", re.IGNORECASE),
    # 4.1 million, 4,1 млн, 1.5 billion, 2 Mrd
    re.compile(rf"{_NUMBER}\s*({_UNITS})(?!\w)", re.IGNORECASE),
)

_GROWTH_PATTERNS = (
    re.compile(r"(\d+)\s*x\s+(?:growth|increase|more|yoy|year over year)", re.IGNORECASE),
    re.compile(r"(\d+)\s*x\b", re.IGNORECASE),
    re.compile(r"(\d+)\s*%\s*(?:increase|growth|up|mom|yoy)", re.IGNORECASE),
)


def _parse_number(raw: str) -> float:
    """Parse "4.1", "4,1" or "1,500" into a float."""
    raw = raw.strip()
    # Grouped thousands: 1,500 / 12,000,000
    if re.fullmatch(r"\d{1,3}(?:,\d{3})+", raw):
        return float(raw.replace(",", ""))
    return float(raw.replace(",", "."))


def extract_amount_millions(text: str) -> float:
    """Monetary amount in millions. Returns 0 when nothing parses."""
    for pattern in _AMOUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            try:
                value = _parse_number(match.group(1))
            except ValueError:
                continue
            unit = match.group(2).lower()
            return value * _UNIT_TO_MILLIONS.get(unit, 1.0)
    return 0.0


def extract_growth(text: str) -> int:
    """Growth multiple from "10x growth" or "300% increase". Returns 0 when absent."""
    for pattern in _GROWTH_PATTERNS:
        match = pattern.search(text)
        if match:
            try:
                return int(match.group(1))
            except ValueError:
                continue
    return 0


# ============================================================================
# Category scoring
# ============================================================================


def _contains_any(text: str, needles: tuple[str, ...]) -> list[str]:
    lower = text.lower()
    return [n for n in needles if re.search(rf"(?<!\w){re.escape(n)}(?!\w)", lower)]


def _score_funding(item: ContentItem) -> tuple[float, str]:
    amount = extract_amount_millions(item.text)
    score = FUNDING_BASE + math.floor(amount) * FUNDING_PER_MILLION
    lower = item.text.lower()
    if re.search(r"(?<!\w)(pre-)?seed(?!\w)", lower):
        score = min(score, FUNDING_SEED_MAX)
    else:
        # Series A and above, or an unlabelled round
        score = min(score, FUNDING_SERIES_MAX)
    return score, f"Amount: ${amount:g}M"


def _score_partnership(item: ContentItem) -> tuple[float, str]:
    partners = _contains_any(item.text, MAJOR_PARTNERS)
    score = PARTNERSHIP_BASE + len(partners) * PARTNERSHIP_PER_MAJOR
    return score, f"Partners: {', '.join(partners) or 'generic'}"


def _score_key_hire(item: ContentItem) -> tuple[float, str]:
    c_level = bool(_contains_any(item.text, C_LEVEL_TITLES))
    score = KEY_HIRE_BASE + (KEY_HIRE_C_LEVEL if c_level else 0)
    return score, "C-level" if c_level else "Regular"


def _score_revenue(item: ContentItem) -> tuple[float, str]:
    amount = extract_amount_millions(item.text)
    score = min(REVENUE_BASE + math.floor(amount) * REVENUE_PER_MILLION, REVENUE_MAX)
    return score, f"Amount: ${amount:g}M"


def _score_launch(item: ContentItem) -> tuple[float, str]:
    viral = item.like_count >= LAUNCH_VIRAL_LIKES
    score = LAUNCH_BASE + (LAUNCH_VIRAL_BONUS if viral else 0)
    return score, f"Likes: {item.like_count}"


def _score_acquisition(item: ContentItem) -> tuple[float, str]:
    return ACQUISITION_BASE, "Acquisition event"


def _score_media(item: ContentItem) -> tuple[float, str]:
    major = bool(_contains_any(item.text, MAJOR_OUTLETS))
    score = MEDIA_BASE + (MEDIA_MAJOR_BONUS if major else 0)
    return score, "Major outlet" if major else "General"


def _score_growth(item: ContentItem) -> tuple[float, str]:
    rate = extract_growth(item.text)
    score = GROWTH_BASE
    if rate >= 10:
        score += (rate // 10) * GROWTH_PER_10X
    return min(score, GROWTH_MAX), f"Growth: {rate}x"


def engagement_score(item: ContentItem) -> float:
    """Engagement fallback: base floor plus metric bonuses, capped daily."""
    score = float(ENGAGEMENT_BASE)
    score += (max(item.like_count, 0) // 1000) * ENGAGEMENT_PER_THOUSAND_LIKES
    score += max(item.repost_count, 0) * ENGAGEMENT_PER_REPOST
    score += (max(item.view_count, 0) // 1000) * ENGAGEMENT_PER_THOUSAND_VIEWS
    return round(min(score, ENGAGEMENT_MAX), 4)


_SCORERS = {
    EventCategory.FUNDING: _score_funding,
    EventCategory.PARTNERSHIP: _score_partnership,
    EventCategory.KEY_HIRE: _score_key_hire,
    EventCategory.REVENUE: _score_revenue,
    EventCategory.PRODUCT_LAUNCH: _score_launch,
    EventCategory.ACQUISITION: _score_acquisition,
    EventCategory.MEDIA_MENTION: _score_media,
    EventCategory.GROWTH: _score_growth,
}


def clamp_score(score: float) -> float:
    """Clamp any score, whatever produced it, into [0, MAX_EVENT_SCORE]."""
    try:
        value = float(score)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(value, float(MAX_EVENT_SCORE)))


def fallback_headline(text: str, limit: int = 60) -> str:
    """Truncate at a word boundary when the text is too long for a headline."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[: limit - 3]
    last_space = cut.rfind(" ")
    if last_space > limit // 2:
        cut = cut[:last_space]
    return cut + "..."


def classify(item: ContentItem) -> ClassificationResult:
    """Score one content item. Pure and total: never raises on odd input."""
    text = item.text or ""
    best: ClassificationResult | None = None

    for category in _CATEGORY_ORDER:
        if not matches_category(text, category):
            continue
        score, details = _SCORERS[category](item)
        score = clamp_score(score)
        if best is None or score > best.score:
            best = ClassificationResult(category, score, details=details)

    if best is None:
        likes, reposts = item.like_count, item.repost_count
        best = ClassificationResult(
            EventCategory.ENGAGEMENT,
            clamp_score(engagement_score(item)),
            details=f"L:{likes} RT:{reposts}",
        )

    best.headline = fallback_headline(text) if text else None
    return best


class RuleBasedClassifier:
    """Deterministic classifier, usable as the final tier of a chain."""

    name = "rules"

    def classify_batch(
        self, entity_name: str, items: list[ContentItem]
    ) -> list[ClassificationResult]:
        results = [classify(item) for item in items]
        for result in results:
            result.tier = self.name
        return results
