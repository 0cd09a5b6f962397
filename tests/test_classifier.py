"""Tests for fantasyyc.classifier: the rule-based event classifier."""

import math

import pytest

from fantasyyc.classifier import (
    MAX_EVENT_SCORE,
    ContentItem,
    EventCategory,
    RuleBasedClassifier,
    clamp_score,
    classify,
    engagement_score,
    extract_amount_millions,
    extract_growth,
    fallback_headline,
)


def _item(text, likes=0, reposts=0, views=0):
    return ContentItem(id="1", text=text, like_count=likes, repost_count=reposts, view_count=views)


class TestEngagementFallback:
    def test_no_keywords_zero_engagement_is_base_floor(self):
        result = classify(_item("Good morning everyone"))
        assert result.category == EventCategory.ENGAGEMENT
        assert result.score == 50

    def test_engagement_counts_metrics(self):
        # 50 + 5 (likes/1000) + 20 (2 per repost) + 2 (0.1 per 1000 views)
        assert engagement_score(_item("hi", likes=5000, reposts=10, views=20000)) == 77

    def test_engagement_is_capped(self):
        result = classify(_item("hi", reposts=1000))
        assert result.score == 500

    def test_empty_text_has_no_headline(self):
        result = classify(_item(""))
        assert result.category == EventCategory.ENGAGEMENT
        assert result.headline is None


class TestFunding:
    def test_five_million(self):
        result = classify(_item("We raised $5M to build the future"))
        assert result.category == EventCategory.FUNDING
        assert result.score == 1000

    def test_series_round_is_capped(self):
        result = classify(_item("Excited to share our $200M Series A led by a16z"))
        assert result.category == EventCategory.FUNDING
        assert result.score == 1500

    def test_seed_round_is_capped_lower(self):
        result = classify(_item("We closed a $4M seed round"))
        assert result.score == 800

    def test_funding_without_amount_is_base(self):
        result = classify(_item("New funding round coming together"))
        assert result.category == EventCategory.FUNDING
        assert result.score == 500

    def test_russian_keyword(self):
        result = classify(_item("Мы привлекли $2M"))
        assert result.category == EventCategory.FUNDING
        assert result.score == 700


class TestOtherCategories:
    def test_acquisition_is_max(self):
        result = classify(_item("Acme has been acquired by BigCo"))
        assert result.category == EventCategory.ACQUISITION
        assert result.score == MAX_EVENT_SCORE

    def test_partnership_major_partners(self):
        result = classify(_item("Partnership with Google and Microsoft"))
        assert result.category == EventCategory.PARTNERSHIP
        assert result.score == 400

    def test_viral_launch(self):
        result = classify(_item("Introducing our new app", likes=1500))
        assert result.category == EventCategory.PRODUCT_LAUNCH
        assert result.score == 350

    def test_growth_multiple(self):
        result = classify(_item("50x growth this quarter"))
        assert result.category == EventCategory.GROWTH
        assert result.score == 450

    def test_growth_is_capped(self):
        result = classify(_item("300% increase in signups"))
        assert result.category == EventCategory.GROWTH
        assert result.score == 1000

    def test_highest_category_wins(self):
        result = classify(_item("We launched v2 and raised $3M"))
        assert result.category == EventCategory.FUNDING
        assert result.score == 800

    def test_tie_goes_to_declaration_order(self):
        # KeyHire (150 + 50 C-level) ties MediaMention (200)
        result = classify(_item("Welcome our new CTO! Read the interview"))
        assert result.category == EventCategory.KEY_HIRE
        assert result.score == 200


class TestExtraction:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("$1.5B round", 1500.0),
            ("$200K grant", 0.2),
            ("4,1 млн рублей", 4.1),
            ("4.1 million ARR", 4.1),
            ("€2,5M", 2.5),
            ("nothing to see", 0.0),
        ],
    )
    def test_amounts(self, text, expected):
        assert math.isclose(extract_amount_millions(text), expected)

    def test_growth_extraction(self):
        assert extract_growth("10x growth") == 10
        assert extract_growth("up 40% yoy") == 40
        assert extract_growth("steady") == 0


class TestHelpers:
    def test_clamp(self):
        assert clamp_score(5000) == MAX_EVENT_SCORE
        assert clamp_score(-5) == 0
        assert clamp_score("abc") == 0
        assert clamp_score(float("nan")) == 0

    def test_headline_truncates_at_word(self):
        text = "word " * 30
        headline = fallback_headline(text)
        assert len(headline) <= 60
        assert headline.endswith("...")

    def test_category_parse_is_lenient(self):
        assert EventCategory.parse("key_hire") == EventCategory.KEY_HIRE
        assert EventCategory.parse("PRODUCT LAUNCH") == EventCategory.PRODUCT_LAUNCH
        with pytest.raises(ValueError):
            EventCategory.parse("Rumor")


class TestRuleBasedClassifier:
    def test_one_result_per_item(self):
        items = [_item("We raised $5M"), _item("hello"), _item("Acquired!")]
        results = RuleBasedClassifier().classify_batch("Acme", items)
        assert len(results) == 3
        assert all(r.tier == "rules" for r in results)
        assert [r.category for r in results] == [
            EventCategory.FUNDING,
            EventCategory.ENGAGEMENT,
            EventCategory.ACQUISITION,
        ]
