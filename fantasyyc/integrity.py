"""
fantasyyc/integrity.py - HMAC tags over score records.

Every persisted daily entity score, player daily score and leaderboard row
carries a tag over its exact field set, so a later edit to the database is
detectable on read. Each scored date is also linked into a per-tournament
chain, so rewriting an old day breaks every later link.

The secret comes from SCORE_HMAC_SECRET, or is derived from the admin private
key. It must not be rotated while a tournament is running: every historical
tag would turn invalid.
"""

import hashlib
import hmac
import json
import logging
import os
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Salt used when the secret is derived from the admin key
_DERIVATION_SALT = b"fantasyyc-score-key"

GENESIS = "GENESIS"


class IntegrityError(RuntimeError):
    """Raised when no signing secret is configured."""


class Verification(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"  # no tag stored (written before tagging existed)


def resolve_secret(secret: str | None = None, admin_private_key: str | None = None) -> bytes:
    """Pick the HMAC secret: explicit value, SCORE_HMAC_SECRET, else derived from the admin key."""
    secret = secret or os.environ.get("SCORE_HMAC_SECRET")
    if secret:
        return secret.encode()
    admin_private_key = admin_private_key or os.environ.get("ADMIN_PRIVATE_KEY")
    if admin_private_key:
        derived = hmac.new(_DERIVATION_SALT, admin_private_key.encode(), hashlib.sha256)
        return derived.hexdigest().encode()
    raise IntegrityError("No SCORE_HMAC_SECRET or ADMIN_PRIVATE_KEY set")


def _normalize(value: Any) -> Any:
    # 10.0 and 10 must sign the same; SQLite hands back REAL for whole numbers.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, float):
        return round(value, 6)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonical_json(fields: dict[str, Any]) -> str:
    """Sorted-key, compact JSON with whole floats collapsed to ints."""
    return json.dumps(_normalize(fields), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class IntegritySigner:
    """Computes and verifies record tags with one process-wide secret."""

    def __init__(self, secret: bytes | str):
        if isinstance(secret, str):
            secret = secret.encode()
        if not secret:
            raise IntegrityError("Empty HMAC secret")
        self._secret = secret

    @classmethod
    def from_env(cls, secret: str | None = None, admin_private_key: str | None = None):
        return cls(resolve_secret(secret, admin_private_key))

    def tag(self, fields: dict[str, Any]) -> str:
        payload = canonical_json(fields).encode()
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, fields: dict[str, Any], stored_tag: str | None) -> Verification:
        if not stored_tag:
            return Verification.UNKNOWN
        if hmac.compare_digest(self.tag(fields), stored_tag):
            return Verification.VALID
        return Verification.INVALID

    # ------------------------------------------------------------------
    # Field sets
    # ------------------------------------------------------------------

    @staticmethod
    def daily_score_fields(
        tournament_id: int, entity_id: int, date: str, base_points: float, item_count: int
    ) -> dict[str, Any]:
        return {"t": tournament_id, "e": entity_id, "d": date, "pts": base_points, "n": item_count}

    @staticmethod
    def player_score_fields(
        tournament_id: int, player: str, date: str, points: float, breakdown: dict
    ) -> dict[str, Any]:
        return {"t": tournament_id, "p": player.lower(), "d": date, "pts": points, "b": breakdown}

    @staticmethod
    def leaderboard_fields(tournament_id: int, player: str, total_score: float) -> dict[str, Any]:
        return {"t": tournament_id, "p": player.lower(), "s": total_score}

    def chain_link(
        self, tournament_id: int, date: str, scores: dict[int, float], previous_hash: str | None
    ) -> str:
        """One link of the per-tournament daily chain."""
        scores_json = canonical_json({str(k): v for k, v in sorted(scores.items())})
        payload = f"{tournament_id}:{date}:{scores_json}:{previous_hash or GENESIS}"
        return hmac.new(self._secret, payload.encode(), hashlib.sha256).hexdigest()
