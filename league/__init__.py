"""
league - Scoring server for FantasyYC

Stores scores in SQLite, serves the leaderboard over HTTP, and runs the
daily scoring and finalization loops. The ledger contract owns prizes; the
league only supplies scores.
"""

from .db import LeagueDB

__all__ = ["LeagueDB"]
