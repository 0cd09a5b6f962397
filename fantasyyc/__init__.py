"""
FantasyYC - Tournament scoring for startup fantasy leagues

Mirrors tracked startups' posts, classifies them into scored events, turns
them into per-player scores through card rarity multipliers, and submits the
final points to the tournament contract.
"""

__version__ = "0.1.0"

from .classifier import (
    ClassificationError,
    ClassificationResult,
    Classifier,
    ContentItem,
    EventCategory,
    RuleBasedClassifier,
    classify,
)
from .entities import DEFAULT_ENTITIES, EntityTable, Rarity, TrackedEntity
from .integrity import IntegrityError, IntegritySigner, Verification

__all__ = [
    # Classification
    "ClassificationError",
    "ClassificationResult",
    "Classifier",
    "ContentItem",
    "EventCategory",
    "RuleBasedClassifier",
    "classify",
    # Entities
    "DEFAULT_ENTITIES",
    "EntityTable",
    "Rarity",
    "TrackedEntity",
    # Integrity
    "IntegrityError",
    "IntegritySigner",
    "Verification",
]
