"""
fantasyyc/scoring.py - Score aggregation and the leaderboard.

Daily entity scores come in from the ingestion pipeline. For each player the
engine multiplies the entity score behind each locked card by that card's
rarity multiplier and stores one player daily score per date. Player daily
scores are the source of truth: leaderboard rows are a cache rebuilt from
their sums, and ranks are recomputed on every read.

Every stored row carries an HMAC tag. Reads never reject a row whose tag
doesn't match, they flag it as "invalid".
"""

import logging
from typing import Any

from league.db import LeagueDB

from .contract import Card
from .entities import EntityTable, Rarity
from .integrity import GENESIS, IntegritySigner

logger = logging.getLogger(__name__)


def _rarity(value: int) -> Rarity:
    try:
        return Rarity(value)
    except ValueError:
        logger.warning(f"Unknown card rarity {value}, treating as Common")
        return Rarity.COMMON


def rank_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order by score desc then address asc, and number the result 1..n."""
    ordered = sorted(rows, key=lambda r: (-float(r["total_score"]), r["player"]))
    for position, row in enumerate(ordered, 1):
        row["rank"] = position
    return ordered


class ScoringEngine:
    """Turns daily entity scores into player scores and a ranked leaderboard."""

    def __init__(self, db: LeagueDB, signer: IntegritySigner, entities: EntityTable | None = None):
        self.db = db
        self.signer = signer
        self.entities = entities or EntityTable()

    # ------------------------------------------------------------------
    # Daily entity scores
    # ------------------------------------------------------------------

    def record_entity_score(
        self,
        tournament_id: int,
        entity_id: int,
        date: str,
        base_points: float,
        item_count: int,
        events: list[dict] | None = None,
    ) -> str:
        """Store (overwrite) one entity's score for a date. Returns the tag."""
        entity = self.entities.get(entity_id)
        if entity is None:
            raise ValueError(f"Unknown entity id {entity_id}")
        base_points = round(float(base_points), 4)
        tag = self.signer.tag(
            IntegritySigner.daily_score_fields(tournament_id, entity_id, date, base_points, item_count)
        )
        self.db.save_daily_score(
            tournament_id, entity_id, entity.name, date, base_points, item_count, events or [], tag
        )
        return tag

    def _verified_daily(self, tournament_id: int, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for row in rows:
            fields = IntegritySigner.daily_score_fields(
                tournament_id, row["entity_id"], row["date"], row["base_points"], row["item_count"]
            )
            row["verified"] = self.signer.verify(fields, row.pop("tag")).value
        return rows

    def entity_daily_scores(self, tournament_id: int, date: str) -> list[dict[str, Any]]:
        return self._verified_daily(tournament_id, self.db.get_daily_scores(tournament_id, date))

    def entity_history(self, tournament_id: int, entity_id: int) -> list[dict[str, Any]]:
        """Every scored day of one entity, oldest first."""
        return self._verified_daily(tournament_id, self.db.get_entity_history(tournament_id, entity_id))

    def entity_listing(self) -> list[dict[str, Any]]:
        """Tracked entities with the rarity they are minted at and its multiplier."""
        return [
            {
                "id": e.id,
                "name": e.name,
                "handle": e.handle,
                "rarity": e.rarity.label,
                "multiplier": self.entities.multiplier(e.rarity),
            }
            for e in self.entities
        ]

    def entity_totals(
        self, tournament_id: int, start_date: str | None = None, end_date: str | None = None
    ) -> dict[int, float]:
        return self.db.aggregate_entity_totals(tournament_id, start_date, end_date)

    def score_vector(
        self, tournament_id: int, start_date: str | None = None, end_date: str | None = None
    ) -> list[int]:
        """Whole-tournament totals as one integer slot per entity id."""
        return self.entities.score_vector(self.entity_totals(tournament_id, start_date, end_date))

    # ------------------------------------------------------------------
    # Daily chain
    # ------------------------------------------------------------------

    def link_date(self, tournament_id: int, date: str) -> str:
        """(Re)compute the chain link for a date, then relink every later date."""
        head = None
        for day in self.db.scored_dates(tournament_id):
            if day < date:
                continue
            previous = self.db.get_chain_head(tournament_id, before_date=day) or GENESIS
            scores = {r["entity_id"]: r["base_points"] for r in self.db.get_daily_scores(tournament_id, day)}
            link = self.signer.chain_link(tournament_id, day, scores, previous)
            self.db.save_chain_link(tournament_id, day, link, previous)
            if day == date:
                head = link
        return head or ""

    def verify_chain(self, tournament_id: int) -> list[dict[str, Any]]:
        """Each stored link with a `valid` flag recomputed from current rows."""
        links = self.db.get_chain(tournament_id)
        previous = GENESIS
        for link in links:
            scores = {
                r["entity_id"]: r["base_points"]
                for r in self.db.get_daily_scores(tournament_id, link["date"])
            }
            expected = self.signer.chain_link(tournament_id, link["date"], scores, previous)
            link["valid"] = link["previous_hash"] == previous and link["hash"] == expected
            previous = link["hash"]
        return links

    # ------------------------------------------------------------------
    # Player aggregation
    # ------------------------------------------------------------------

    def player_points(self, cards: list[Card], daily: dict[int, float]) -> tuple[float, dict]:
        """Points for one lineup on one date, plus the per-card breakdown."""
        total = 0.0
        breakdown = {}
        for card in cards:
            rarity = _rarity(card.rarity)
            multiplier = self.entities.multiplier(rarity)
            base = float(daily.get(card.entity_id, 0.0))
            points = round(base * multiplier, 4)
            entity = self.entities.get(card.entity_id)
            breakdown[str(card.token_id)] = {
                "entity_id": card.entity_id,
                "name": entity.name if entity else card.name,
                "rarity": rarity.label,
                "multiplier": multiplier,
                "base_points": base,
                "points": points,
            }
            total += points
        return round(total, 4), breakdown

    def aggregate_date(
        self, tournament_id: int, date: str, lineups: dict[str, list[Card]]
    ) -> dict[str, float]:
        """Store one player daily score per lineup, then rebuild the leaderboard.

        Re-running for the same date overwrites each player's row, so the
        result does not depend on how many times aggregation ran.
        """
        daily = {
            r["entity_id"]: r["base_points"] for r in self.db.get_daily_scores(tournament_id, date)
        }
        if not daily:
            logger.warning(f"No entity scores for tournament {tournament_id} on {date}")

        results = {}
        for player, cards in lineups.items():
            player = player.lower()
            points, breakdown = self.player_points(cards, daily)
            tag = self.signer.tag(
                IntegritySigner.player_score_fields(tournament_id, player, date, points, breakdown)
            )
            self.db.save_player_score(tournament_id, player, date, points, breakdown, tag)
            self.db.save_player_cards(
                tournament_id,
                player,
                [
                    {
                        "token_id": c.token_id,
                        "entity_id": c.entity_id,
                        "entity_name": breakdown[str(c.token_id)]["name"],
                        "rarity": breakdown[str(c.token_id)]["rarity"],
                        "multiplier": breakdown[str(c.token_id)]["multiplier"],
                    }
                    for c in cards
                ],
            )
            results[player] = points

        self.rebuild_leaderboard(tournament_id)
        logger.info(f"Aggregated {len(results)} players for tournament {tournament_id} on {date}")
        return results

    # ------------------------------------------------------------------
    # Leaderboard
    # ------------------------------------------------------------------

    def rebuild_leaderboard(self, tournament_id: int) -> int:
        """Recompute every leaderboard row from player daily scores."""
        totals = self.db.player_totals(tournament_id)
        rows = rank_rows(
            [{"player": player, "total_score": round(total, 4)} for player, total in totals.items()]
        )
        for row in rows:
            row["tag"] = self.signer.tag(
                IntegritySigner.leaderboard_fields(tournament_id, row["player"], row["total_score"])
            )
        self.db.save_leaderboard_rows(tournament_id, rows)
        return len(rows)

    def _verified_rows(self, tournament_id: int) -> list[dict[str, Any]]:
        rows = self.db.get_leaderboard_rows(tournament_id)
        for row in rows:
            fields = IntegritySigner.leaderboard_fields(tournament_id, row["player"], row["total_score"])
            row["verified"] = self.signer.verify(fields, row.pop("tag")).value
        return rank_rows(rows)

    def leaderboard(self, tournament_id: int, limit: int = 100) -> list[dict[str, Any]]:
        return self._verified_rows(tournament_id)[:limit]

    def player_rank(self, tournament_id: int, player: str) -> dict[str, Any] | None:
        player = player.lower()
        for row in self._verified_rows(tournament_id):
            if row["player"] == player:
                return row
        return None

    def player_history(self, tournament_id: int, player: str) -> list[dict[str, Any]]:
        rows = self.db.get_player_history(tournament_id, player)
        for row in rows:
            fields = IntegritySigner.player_score_fields(
                tournament_id, row["player"], row["date"], row["points"], row["breakdown"]
            )
            row["verified"] = self.signer.verify(fields, row.pop("tag")).value
        return rows

    def tournament_stats(self, tournament_id: int) -> dict[str, Any]:
        stats = self.db.tournament_stats(tournament_id)
        stats["scored_days"] = len(self.db.scored_dates(tournament_id))
        return stats
