"""Tests for fantasyyc.config: TOML config file and env overrides."""

import textwrap
from pathlib import Path

import pytest

from fantasyyc.config import LeagueConfig, load_config
from fantasyyc.entities import DEFAULT_ENTITIES, Rarity

ENV_VARS = (
    "FANTASYYC_CONFIG",
    "ADMIN_PRIVATE_KEY",
    "ADMIN_API_KEY",
    "SCORE_HMAC_SECRET",
    "TWITTER_API_KEY",
    "OPENROUTER_API_KEY",
    "FANTASYYC_RPC_URL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_dir(tmp_path):
    """Temporary directory for config files."""
    return tmp_path


def _write_config(config_dir: Path, content: str) -> Path:
    """Write a config.toml and return the path."""
    config_path = config_dir / "config.toml"
    config_path.write_text(textwrap.dedent(content))
    return config_path


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, config_dir):
        cfg = load_config(config_dir / "nonexistent.toml")
        assert isinstance(cfg, LeagueConfig)
        assert len(cfg.entities) == 19
        assert cfg.chain.admin_private_key is None
        assert cfg.admin_api_key is None
        assert cfg.scheduler.sync_interval == 30
        assert cfg.entity_table().multiplier(Rarity.LEGENDARY) == 10

    def test_full_config(self, config_dir):
        path = _write_config(config_dir, """\
            [chain]
            rpc_url = "http://localhost:8545"
            chain_id = 31337
            tournament_manager = "0x0000000000000000000000000000000000000001"

            [content]
            page_limit = 2

            [classifier]
            models = "openai/gpt-4o-mini"
            call_delay = 0

            [scoring]
            db_path = "~/league-test.db"
            workers = 8

            [scoring.multipliers]
            Legendary = 20
            "Epic Rare" = 9

            [scheduler]
            enabled = false
            daily_hour_utc = 3

            [api]
            admin_key = "from-file"
        """)
        cfg = load_config(path)
        assert cfg.chain.rpc_url == "http://localhost:8545"
        assert cfg.chain.chain_id == 31337
        assert cfg.chain.contract_addresses()["tournament_manager"].endswith("01")
        assert cfg.content.page_limit == 2
        assert cfg.classifier.models == ["openai/gpt-4o-mini"]
        assert cfg.classifier.call_delay == 0
        assert not cfg.scoring.db_path.startswith("~")
        assert cfg.scoring.workers == 8
        assert cfg.scoring.multipliers == {Rarity.LEGENDARY: 20, Rarity.EPIC_RARE: 9}
        assert cfg.scheduler.enabled is False
        assert cfg.scheduler.daily_hour_utc == 3
        assert cfg.admin_api_key == "from-file"

        table = cfg.entity_table()
        assert table.multiplier(Rarity.LEGENDARY) == 20
        assert table.multiplier(Rarity.RARE) == 3

    def test_corrupt_toml_returns_defaults(self, config_dir):
        path = _write_config(config_dir, "this is [not valid toml")
        cfg = load_config(path)
        assert cfg.chain.rpc_url == LeagueConfig().chain.rpc_url
        assert len(cfg.entities) == 19

    def test_empty_file(self, config_dir):
        path = _write_config(config_dir, "")
        assert load_config(path).scoring.db_path == "league.db"

    def test_bad_multiplier_ignored(self, config_dir):
        path = _write_config(config_dir, """\
            [scoring.multipliers]
            Mythic = 50
            Rare = 4
        """)
        assert load_config(path).scoring.multipliers == {Rarity.RARE: 4}

    def test_path_from_env(self, config_dir, monkeypatch):
        path = _write_config(config_dir, """\
            [scoring]
            workers = 2
        """)
        monkeypatch.setenv("FANTASYYC_CONFIG", str(path))
        assert load_config().scoring.workers == 2


def _entity_blocks(count: int) -> str:
    """[[entities]] tables for ids 1..count, the first one fully specified."""
    blocks = ['[[entities]]\nid = 1\nname = "Acme"\nhandle = "@acme"\nrarity = "Legendary"\n']
    blocks += [f'[[entities]]\nid = {i}\nname = "Startup{i}"\n' for i in range(2, count + 1)]
    return "\n".join(blocks)


class TestEntities:
    def test_custom_entity_table(self, config_dir):
        path = _write_config(config_dir, _entity_blocks(19))
        cfg = load_config(path)
        assert len(cfg.entities) == 19
        assert cfg.entities[0].name == "Acme"
        assert cfg.entities[0].handle == "acme"
        assert cfg.entities[0].rarity == Rarity.LEGENDARY
        assert cfg.entities[1].handle == "Startup2"
        assert cfg.entities[1].rarity == Rarity.COMMON

    def test_short_table_falls_back_to_defaults(self, config_dir):
        path = _write_config(config_dir, _entity_blocks(2))
        assert load_config(path).entities == list(DEFAULT_ENTITIES)

    def test_long_table_falls_back_to_defaults(self, config_dir):
        path = _write_config(config_dir, _entity_blocks(20))
        assert load_config(path).entities == list(DEFAULT_ENTITIES)

    def test_gap_in_ids_falls_back_to_defaults(self, config_dir):
        path = _write_config(config_dir, """\
            [[entities]]
            id = 1
            name = "Acme"

            [[entities]]
            id = 3
            name = "Gamma"
        """)
        assert load_config(path).entities == list(DEFAULT_ENTITIES)

    def test_unknown_rarity_falls_back_to_defaults(self, config_dir):
        path = _write_config(config_dir, """\
            [[entities]]
            id = 1
            name = "Acme"
            rarity = "Mythic"
        """)
        assert len(load_config(path).entities) == 19


class TestEnvOverrides:
    def test_env_wins_over_file(self, config_dir, monkeypatch):
        path = _write_config(config_dir, """\
            [chain]
            admin_private_key = "0xfile"

            [api]
            admin_key = "from-file"
        """)
        monkeypatch.setenv("ADMIN_PRIVATE_KEY", "0xenv")
        monkeypatch.setenv("ADMIN_API_KEY", "from-env")
        monkeypatch.setenv("TWITTER_API_KEY", "tw")
        monkeypatch.setenv("OPENROUTER_API_KEY", "or")
        monkeypatch.setenv("SCORE_HMAC_SECRET", "s3cret")
        monkeypatch.setenv("FANTASYYC_RPC_URL", "http://rpc.example")

        cfg = load_config(path)
        assert cfg.chain.admin_private_key == "0xenv"
        assert cfg.admin_api_key == "from-env"
        assert cfg.content.api_key == "tw"
        assert cfg.classifier.api_key == "or"
        assert cfg.scoring.hmac_secret == "s3cret"
        assert cfg.chain.rpc_url == "http://rpc.example"

    def test_file_value_kept_without_env(self, config_dir):
        path = _write_config(config_dir, """\
            [chain]
            admin_private_key = "0xfile"
        """)
        assert load_config(path).chain.admin_private_key == "0xfile"
