"""Tests for fantasyyc.integrity: HMAC tags and the daily chain."""

import hashlib
import hmac

import pytest

from fantasyyc.integrity import (
    GENESIS,
    IntegrityError,
    IntegritySigner,
    Verification,
    canonical_json,
    resolve_secret,
)


class TestSecret:
    def test_explicit_secret_wins(self, monkeypatch):
        monkeypatch.setenv("SCORE_HMAC_SECRET", "from-env")
        assert resolve_secret("explicit") == b"explicit"

    def test_env_secret(self, monkeypatch):
        monkeypatch.setenv("SCORE_HMAC_SECRET", "from-env")
        assert resolve_secret() == b"from-env"

    def test_derived_from_admin_key(self, monkeypatch):
        monkeypatch.delenv("SCORE_HMAC_SECRET", raising=False)
        monkeypatch.delenv("ADMIN_PRIVATE_KEY", raising=False)
        expected = hmac.new(b"fantasyyc-score-key", b"0xabc", hashlib.sha256).hexdigest().encode()
        assert resolve_secret(admin_private_key="0xabc") == expected

    def test_missing_secret_raises(self, monkeypatch):
        monkeypatch.delenv("SCORE_HMAC_SECRET", raising=False)
        monkeypatch.delenv("ADMIN_PRIVATE_KEY", raising=False)
        with pytest.raises(IntegrityError):
            resolve_secret()

    def test_empty_secret_rejected(self):
        with pytest.raises(IntegrityError):
            IntegritySigner("")


class TestCanonicalJson:
    def test_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'

    def test_whole_floats_sign_like_ints(self, signer):
        fields_int = IntegritySigner.daily_score_fields(1, 3, "2025-01-01", 10, 2)
        fields_float = IntegritySigner.daily_score_fields(1, 3, "2025-01-01", 10.0, 2)
        assert signer.tag(fields_int) == signer.tag(fields_float)


class TestVerify:
    def test_roundtrip_valid(self, signer):
        fields = IntegritySigner.leaderboard_fields(1, "0xABC", 120.5)
        assert signer.verify(fields, signer.tag(fields)) == Verification.VALID

    def test_edited_field_is_invalid(self, signer):
        fields = IntegritySigner.leaderboard_fields(1, "0xabc", 120.5)
        tag = signer.tag(fields)
        edited = IntegritySigner.leaderboard_fields(1, "0xabc", 9999)
        assert signer.verify(edited, tag) == Verification.INVALID

    def test_missing_tag_is_unknown(self, signer):
        fields = IntegritySigner.leaderboard_fields(1, "0xabc", 1)
        assert signer.verify(fields, None) == Verification.UNKNOWN
        assert signer.verify(fields, "") == Verification.UNKNOWN

    def test_player_address_case_does_not_matter(self, signer):
        a = IntegritySigner.player_score_fields(1, "0xABC", "2025-01-01", 5, {})
        b = IntegritySigner.player_score_fields(1, "0xabc", "2025-01-01", 5, {})
        assert signer.tag(a) == signer.tag(b)

    def test_other_secret_is_invalid(self, signer):
        fields = IntegritySigner.leaderboard_fields(1, "0xabc", 1)
        other = IntegritySigner("another-secret")
        assert other.verify(fields, signer.tag(fields)) == Verification.INVALID


class TestChainLink:
    def test_genesis_default(self, signer):
        scores = {1: 100, 2: 50}
        assert signer.chain_link(1, "2025-01-01", scores, None) == signer.chain_link(
            1, "2025-01-01", scores, GENESIS
        )

    def test_previous_hash_changes_link(self, signer):
        scores = {1: 100}
        assert signer.chain_link(1, "2025-01-02", scores, "aaa") != signer.chain_link(
            1, "2025-01-02", scores, "bbb"
        )

    def test_key_order_does_not_matter(self, signer):
        assert signer.chain_link(1, "d", {2: 1, 1: 2}, None) == signer.chain_link(1, "d", {1: 2, 2: 1}, None)
