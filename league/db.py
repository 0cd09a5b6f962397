"""
league/db.py - SQLite storage for the scoring server.

All queries go through LeagueDB. One instance per process, backed by a single
SQLite file (or :memory: for tests). Ingestion workers write from a thread
pool, so every statement runs under one re-entrant lock.
"""

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any


class LeagueDB:
    """Thin wrapper around SQLite for tournament, score and leaderboard storage."""

    def __init__(self, path: str = "league.db"):
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS tournaments (
                id INTEGER PRIMARY KEY,
                registration_start INTEGER NOT NULL,
                start_time INTEGER NOT NULL,
                end_time INTEGER NOT NULL,
                prize_pool TEXT NOT NULL DEFAULT '0',
                entry_count INTEGER DEFAULT 0,
                status TEXT NOT NULL,
                ledger_status INTEGER DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS entries (
                tournament_id INTEGER NOT NULL,
                player TEXT NOT NULL,
                created_at TEXT,
                UNIQUE(tournament_id, player)
            );

            CREATE TABLE IF NOT EXISTS player_cards (
                tournament_id INTEGER NOT NULL,
                player TEXT NOT NULL,
                token_id INTEGER NOT NULL,
                entity_id INTEGER NOT NULL,
                entity_name TEXT,
                rarity TEXT NOT NULL,
                multiplier INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS daily_scores (
                tournament_id INTEGER NOT NULL,
                entity_id INTEGER NOT NULL,
                entity_name TEXT NOT NULL,
                date TEXT NOT NULL,
                base_points REAL NOT NULL,
                item_count INTEGER DEFAULT 0,
                events TEXT,
                tag TEXT,
                updated_at TEXT,
                UNIQUE(tournament_id, entity_id, date)
            );

            CREATE TABLE IF NOT EXISTS score_history (
                tournament_id INTEGER NOT NULL,
                player TEXT NOT NULL,
                date TEXT NOT NULL,
                points REAL NOT NULL,
                breakdown TEXT,
                tag TEXT,
                updated_at TEXT,
                UNIQUE(tournament_id, player, date)
            );

            CREATE TABLE IF NOT EXISTS leaderboard (
                tournament_id INTEGER NOT NULL,
                player TEXT NOT NULL,
                total_score REAL DEFAULT 0,
                rank INTEGER,
                tag TEXT,
                last_updated TEXT,
                UNIQUE(tournament_id, player)
            );

            CREATE TABLE IF NOT EXISTS feed_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tournament_id INTEGER NOT NULL,
                entity_id INTEGER NOT NULL,
                entity_name TEXT NOT NULL,
                category TEXT NOT NULL,
                points REAL NOT NULL,
                description TEXT,
                source_id TEXT,
                date TEXT NOT NULL,
                tier TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS integrity_chain (
                tournament_id INTEGER NOT NULL,
                date TEXT NOT NULL,
                hash TEXT NOT NULL,
                previous_hash TEXT NOT NULL,
                created_at TEXT,
                PRIMARY KEY (tournament_id, date)
            );

            CREATE TABLE IF NOT EXISTS finalization_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tournament_id INTEGER NOT NULL,
                state TEXT NOT NULL,
                vector TEXT,
                tx_hash TEXT,
                ledger_status INTEGER,
                error TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS finalization_claims (
                tournament_id INTEGER PRIMARY KEY,
                owner TEXT NOT NULL,
                claimed_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_daily_scores_date ON daily_scores(tournament_id, date);
            CREATE INDEX IF NOT EXISTS idx_history_player ON score_history(tournament_id, player);
            CREATE INDEX IF NOT EXISTS idx_feed_date ON feed_events(date);
            """
        )

    @contextmanager
    def _tx(self):
        """Serialize a unit of work and commit it, rolling back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._conn.execute(sql, params).fetchall()]

    def _one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def get_config(self, key: str) -> str | None:
        row = self._one("SELECT value FROM config WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_config(self, key: str, value: str | None) -> None:
        with self._tx() as conn:
            if value is None:
                conn.execute("DELETE FROM config WHERE key = ?", (key,))
            else:
                conn.execute(
                    "INSERT INTO config (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )

    # ------------------------------------------------------------------
    # Tournaments
    # ------------------------------------------------------------------

    def save_tournament(self, t: dict[str, Any]) -> None:
        """Insert or update a tournament row (keyed by ledger id)."""
        now = _now()
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO tournaments (id, registration_start, start_time, end_time, prize_pool, "
                "entry_count, status, ledger_status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET registration_start = excluded.registration_start, "
                "start_time = excluded.start_time, end_time = excluded.end_time, "
                "prize_pool = excluded.prize_pool, entry_count = excluded.entry_count, "
                "status = excluded.status, ledger_status = excluded.ledger_status, "
                "updated_at = excluded.updated_at",
                (
                    t["id"],
                    t["registration_start"],
                    t["start_time"],
                    t["end_time"],
                    str(t.get("prize_pool", 0)),
                    t.get("entry_count", 0),
                    t["status"],
                    t.get("ledger_status", 0),
                    now,
                    now,
                ),
            )

    def get_tournament(self, tournament_id: int) -> dict[str, Any] | None:
        return self._one("SELECT * FROM tournaments WHERE id = ?", (tournament_id,))

    def latest_tournament_with_status(self, statuses: tuple[str, ...]) -> dict[str, Any] | None:
        marks = ",".join("?" for _ in statuses)
        return self._one(
            f"SELECT * FROM tournaments WHERE status IN ({marks}) ORDER BY id DESC LIMIT 1",
            tuple(statuses),
        )

    def update_tournament_status(
        self, tournament_id: int, status: str, ledger_status: int | None = None
    ) -> None:
        with self._tx() as conn:
            if ledger_status is None:
                conn.execute(
                    "UPDATE tournaments SET status = ?, updated_at = ? WHERE id = ?",
                    (status, _now(), tournament_id),
                )
            else:
                conn.execute(
                    "UPDATE tournaments SET status = ?, ledger_status = ?, updated_at = ? WHERE id = ?",
                    (status, ledger_status, _now(), tournament_id),
                )

    def wipe_all(self) -> None:
        """Drop every cached tournament and score row. Config kv survives."""
        with self._tx() as conn:
            for table in (
                "tournaments",
                "entries",
                "player_cards",
                "daily_scores",
                "score_history",
                "leaderboard",
                "feed_events",
                "integrity_chain",
                "finalization_attempts",
                "finalization_claims",
            ):
                conn.execute(f"DELETE FROM {table}")

    # ------------------------------------------------------------------
    # Entries & cards
    # ------------------------------------------------------------------

    def save_entries(self, tournament_id: int, players: list[str]) -> None:
        now = _now()
        with self._tx() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO entries (tournament_id, player, created_at) VALUES (?, ?, ?)",
                [(tournament_id, p.lower(), now) for p in players],
            )

    def get_entries(self, tournament_id: int) -> list[str]:
        rows = self._all(
            "SELECT player FROM entries WHERE tournament_id = ? ORDER BY player", (tournament_id,)
        )
        return [r["player"] for r in rows]

    def save_player_cards(self, tournament_id: int, player: str, cards: list[dict[str, Any]]) -> None:
        """Replace the card snapshot for one player."""
        player = player.lower()
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM player_cards WHERE tournament_id = ? AND player = ?",
                (tournament_id, player),
            )
            conn.executemany(
                "INSERT INTO player_cards (tournament_id, player, token_id, entity_id, entity_name, "
                "rarity, multiplier) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        tournament_id,
                        player,
                        c["token_id"],
                        c["entity_id"],
                        c.get("entity_name"),
                        c["rarity"],
                        c["multiplier"],
                    )
                    for c in cards
                ],
            )

    def get_player_cards(self, tournament_id: int, player: str) -> list[dict[str, Any]]:
        return self._all(
            "SELECT token_id, entity_id, entity_name, rarity, multiplier FROM player_cards "
            "WHERE tournament_id = ? AND player = ? ORDER BY token_id",
            (tournament_id, player.lower()),
        )

    # ------------------------------------------------------------------
    # Daily entity scores
    # ------------------------------------------------------------------

    def save_daily_score(
        self,
        tournament_id: int,
        entity_id: int,
        entity_name: str,
        date: str,
        base_points: float,
        item_count: int,
        events: list[dict],
        tag: str | None,
    ) -> None:
        """Overwrite the (tournament, entity, date) score."""
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO daily_scores (tournament_id, entity_id, entity_name, date, base_points, "
                "item_count, events, tag, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(tournament_id, entity_id, date) DO UPDATE SET "
                "entity_name = excluded.entity_name, base_points = excluded.base_points, "
                "item_count = excluded.item_count, events = excluded.events, tag = excluded.tag, "
                "updated_at = excluded.updated_at",
                (
                    tournament_id,
                    entity_id,
                    entity_name,
                    date,
                    base_points,
                    item_count,
                    json.dumps(events),
                    tag,
                    _now(),
                ),
            )

    def get_daily_score(self, tournament_id: int, entity_id: int, date: str) -> dict[str, Any] | None:
        row = self._one(
            "SELECT * FROM daily_scores WHERE tournament_id = ? AND entity_id = ? AND date = ?",
            (tournament_id, entity_id, date),
        )
        if row:
            row["events"] = json.loads(row["events"]) if row["events"] else []
        return row

    def get_daily_scores(self, tournament_id: int, date: str) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM daily_scores WHERE tournament_id = ? AND date = ? ORDER BY entity_id",
            (tournament_id, date),
        )
        for row in rows:
            row["events"] = json.loads(row["events"]) if row["events"] else []
        return rows

    def get_entity_history(self, tournament_id: int, entity_id: int) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM daily_scores WHERE tournament_id = ? AND entity_id = ? ORDER BY date",
            (tournament_id, entity_id),
        )
        for row in rows:
            row["events"] = json.loads(row["events"]) if row["events"] else []
        return rows

    def aggregate_entity_totals(
        self, tournament_id: int, start_date: str | None = None, end_date: str | None = None
    ) -> dict[int, float]:
        """Sum of base points per entity, optionally bounded to [start_date, end_date]."""
        sql = "SELECT entity_id, SUM(base_points) AS total FROM daily_scores WHERE tournament_id = ?"
        params: list[Any] = [tournament_id]
        if start_date:
            sql += " AND date >= ?"
            params.append(start_date)
        if end_date:
            sql += " AND date <= ?"
            params.append(end_date)
        sql += " GROUP BY entity_id"
        return {r["entity_id"]: r["total"] or 0.0 for r in self._all(sql, tuple(params))}

    def scored_dates(self, tournament_id: int) -> list[str]:
        rows = self._all(
            "SELECT DISTINCT date FROM daily_scores WHERE tournament_id = ? ORDER BY date",
            (tournament_id,),
        )
        return [r["date"] for r in rows]

    # ------------------------------------------------------------------
    # Player daily scores
    # ------------------------------------------------------------------

    def save_player_score(
        self,
        tournament_id: int,
        player: str,
        date: str,
        points: float,
        breakdown: dict,
        tag: str | None,
    ) -> None:
        """Overwrite the (tournament, player, date) score."""
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO score_history (tournament_id, player, date, points, breakdown, tag, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(tournament_id, player, date) DO UPDATE SET points = excluded.points, "
                "breakdown = excluded.breakdown, tag = excluded.tag, updated_at = excluded.updated_at",
                (tournament_id, player.lower(), date, points, json.dumps(breakdown), tag, _now()),
            )

    def get_player_history(self, tournament_id: int, player: str) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM score_history WHERE tournament_id = ? AND player = ? ORDER BY date",
            (tournament_id, player.lower()),
        )
        for row in rows:
            row["breakdown"] = json.loads(row["breakdown"]) if row["breakdown"] else {}
        return rows

    def player_totals(self, tournament_id: int) -> dict[str, float]:
        rows = self._all(
            "SELECT player, SUM(points) AS total FROM score_history WHERE tournament_id = ? GROUP BY player",
            (tournament_id,),
        )
        return {r["player"]: r["total"] or 0.0 for r in rows}

    # ------------------------------------------------------------------
    # Leaderboard
    # ------------------------------------------------------------------

    def save_leaderboard_rows(self, tournament_id: int, rows: list[dict[str, Any]]) -> None:
        """Upsert leaderboard rows: dicts with player, total_score, rank, tag."""
        now = _now()
        with self._tx() as conn:
            conn.executemany(
                "INSERT INTO leaderboard (tournament_id, player, total_score, rank, tag, last_updated) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(tournament_id, player) DO UPDATE SET total_score = excluded.total_score, "
                "rank = excluded.rank, tag = excluded.tag, last_updated = excluded.last_updated",
                [
                    (tournament_id, r["player"].lower(), r["total_score"], r["rank"], r["tag"], now)
                    for r in rows
                ],
            )

    def get_leaderboard_rows(self, tournament_id: int) -> list[dict[str, Any]]:
        return self._all(
            "SELECT player, total_score, rank, tag, last_updated FROM leaderboard WHERE tournament_id = ?",
            (tournament_id,),
        )

    def tournament_stats(self, tournament_id: int) -> dict[str, Any]:
        row = self._one(
            "SELECT COUNT(*) AS total_players, AVG(total_score) AS avg_score, "
            "MAX(total_score) AS max_score, MIN(total_score) AS min_score "
            "FROM leaderboard WHERE tournament_id = ?",
            (tournament_id,),
        )
        return row or {"total_players": 0, "avg_score": None, "max_score": None, "min_score": None}

    # ------------------------------------------------------------------
    # Feed
    # ------------------------------------------------------------------

    def replace_feed_events(
        self, tournament_id: int, entity_id: int, date: str, events: list[dict[str, Any]]
    ) -> None:
        """Swap one entity's feed events for a date, so re-scoring doesn't duplicate them."""
        now = _now()
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM feed_events WHERE tournament_id = ? AND entity_id = ? AND date = ?",
                (tournament_id, entity_id, date),
            )
            conn.executemany(
                "INSERT INTO feed_events (tournament_id, entity_id, entity_name, category, points, "
                "description, source_id, date, tier, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        tournament_id,
                        entity_id,
                        e["entity_name"],
                        e["category"],
                        e["points"],
                        e.get("description"),
                        e.get("source_id"),
                        date,
                        e.get("tier"),
                        now,
                    )
                    for e in events
                ],
            )

    def get_feed(self, limit: int = 50) -> list[dict[str, Any]]:
        return self._all(
            "SELECT entity_id, entity_name, category, points, description, source_id, date, tier "
            "FROM feed_events ORDER BY date DESC, points DESC, id DESC LIMIT ?",
            (limit,),
        )

    # ------------------------------------------------------------------
    # Integrity chain
    # ------------------------------------------------------------------

    def get_chain_head(self, tournament_id: int, before_date: str | None = None) -> str | None:
        """Hash of the newest link, or of the newest link strictly before a date."""
        if before_date is None:
            row = self._one(
                "SELECT hash FROM integrity_chain WHERE tournament_id = ? ORDER BY date DESC LIMIT 1",
                (tournament_id,),
            )
        else:
            row = self._one(
                "SELECT hash FROM integrity_chain WHERE tournament_id = ? AND date < ? "
                "ORDER BY date DESC LIMIT 1",
                (tournament_id, before_date),
            )
        return row["hash"] if row else None

    def save_chain_link(self, tournament_id: int, date: str, hash_: str, previous_hash: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO integrity_chain (tournament_id, date, hash, previous_hash, created_at) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT(tournament_id, date) DO UPDATE SET "
                "hash = excluded.hash, previous_hash = excluded.previous_hash",
                (tournament_id, date, hash_, previous_hash, _now()),
            )

    def get_chain(self, tournament_id: int) -> list[dict[str, Any]]:
        return self._all(
            "SELECT date, hash, previous_hash FROM integrity_chain WHERE tournament_id = ? ORDER BY date",
            (tournament_id,),
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def record_finalization(
        self,
        tournament_id: int,
        state: str,
        vector: list[int] | None = None,
        tx_hash: str | None = None,
        ledger_status: int | None = None,
        error: str | None = None,
    ) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO finalization_attempts (tournament_id, state, vector, tx_hash, ledger_status, "
                "error, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    tournament_id,
                    state,
                    json.dumps(vector) if vector is not None else None,
                    tx_hash,
                    ledger_status,
                    error,
                    _now(),
                ),
            )

    def get_finalization_attempts(self, tournament_id: int) -> list[dict[str, Any]]:
        rows = self._all(
            "SELECT * FROM finalization_attempts WHERE tournament_id = ? ORDER BY id",
            (tournament_id,),
        )
        for row in rows:
            row["vector"] = json.loads(row["vector"]) if row["vector"] else None
        return rows

    def claim_finalization(self, tournament_id: int, owner: str, stale_after: float = 600.0) -> bool:
        """Take the per-tournament finalization claim. False while another owner holds it.

        A claim older than `stale_after` seconds is treated as abandoned and taken over.
        """
        now = time.time()
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM finalization_claims WHERE tournament_id = ? AND claimed_at < ?",
                (tournament_id, now - stale_after),
            )
            cur = conn.execute(
                "INSERT OR IGNORE INTO finalization_claims (tournament_id, owner, claimed_at) "
                "VALUES (?, ?, ?)",
                (tournament_id, owner, now),
            )
            return cur.rowcount == 1

    def release_finalization(self, tournament_id: int, owner: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM finalization_claims WHERE tournament_id = ? AND owner = ?",
                (tournament_id, owner),
            )

    def get_finalization_claim(self, tournament_id: int) -> dict[str, Any] | None:
        return self._one("SELECT * FROM finalization_claims WHERE tournament_id = ?", (tournament_id,))


def _now() -> str:
    """ISO timestamp in UTC."""
    return datetime.now(timezone.utc).isoformat()
