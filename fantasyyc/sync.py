"""
fantasyyc/sync.py - Mirrors tournament state from the ledger into SQLite.

The synchronizer is the only writer of the "current tournament" pointer.
Phase is derived from the three timestamps, except Finalized and Cancelled,
which only the ledger can report. A changed contract address set means a
redeploy: every cached tournament and score row is wiped before new state is
read.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from league.db import LeagueDB

from .contract import (
    STATUS_CANCELLED,
    STATUS_FINALIZED,
    LedgerClient,
    LedgerError,
    LedgerTournament,
    contract_fingerprint,
)

logger = logging.getLogger(__name__)

FINGERPRINT_KEY = "contract_fingerprint"
CURRENT_KEY = "current_tournament_id"


class Phase(str, Enum):
    CREATED = "created"
    REGISTRATION = "registration"
    ACTIVE = "active"
    ENDED = "ended"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


PRE_TERMINAL = (Phase.REGISTRATION, Phase.ACTIVE, Phase.ENDED)
TERMINAL = (Phase.FINALIZED, Phase.CANCELLED)

# Phases in which a date may still be scored
SCORABLE_PHASES = (Phase.ACTIVE.value, Phase.ENDED.value)


def derive_phase(
    registration_start: int, start_time: int, end_time: int, status_code: int, now: int
) -> Phase:
    """Local phase from timestamps; the ledger's terminal status always wins."""
    if status_code == STATUS_FINALIZED:
        return Phase.FINALIZED
    if status_code == STATUS_CANCELLED:
        return Phase.CANCELLED
    if now < registration_start:
        return Phase.CREATED
    if now < start_time:
        return Phase.REGISTRATION
    if now < end_time:
        return Phase.ACTIVE
    return Phase.ENDED


def validate_timestamps(t: LedgerTournament) -> None:
    if not (t.registration_start <= t.start_time <= t.end_time):
        raise ValueError(
            f"Tournament {t.id} has inconsistent timestamps: registration {t.registration_start}, "
            f"start {t.start_time}, end {t.end_time}"
        )


class ScoringRefused(RuntimeError):
    """A scoring or aggregation request the tournament can't accept."""


class TournamentClosed(ScoringRefused):
    """The tournament is not in a scorable phase."""


class DateOutOfRange(ScoringRefused):
    """The date falls outside the tournament's play window."""


def _utc_date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


def tournament_dates(tournament: dict[str, Any]) -> tuple[str, str]:
    """First and last UTC dates of play. end_time is exclusive."""
    start = tournament["start_time"]
    end = max(start, tournament["end_time"] - 1)
    return _utc_date(start), _utc_date(end)


def check_scorable(tournament: dict[str, Any], date: str | None = None) -> None:
    """Raise ScoringRefused unless `date` may be scored for this tournament now."""
    if tournament["status"] not in SCORABLE_PHASES:
        raise TournamentClosed(
            f"Tournament {tournament['id']} is {tournament['status']}, not open for scoring"
        )
    if date is None:
        return
    first, last = tournament_dates(tournament)
    if not (first <= date <= last):
        raise DateOutOfRange(
            f"{date} is outside tournament {tournament['id']} ({first} to {last})"
        )


@dataclass
class SyncResult:
    tournament: dict[str, Any] | None = None
    wiped: bool = False
    fallback: bool = False
    error: str | None = None

    @property
    def phase(self) -> Phase | None:
        return Phase(self.tournament["status"]) if self.tournament else None


class TournamentSynchronizer:
    """Polls the ledger and reconciles local tournament state."""

    def __init__(self, ledger: LedgerClient, db: LeagueDB):
        self.ledger = ledger
        self.db = db

    def check_fingerprint(self) -> bool:
        """Wipe local data if the contract set changed. Returns True when wiped."""
        fingerprint = contract_fingerprint(self.ledger.addresses)
        stored = self.db.get_config(FINGERPRINT_KEY)
        if stored == fingerprint:
            return False
        if stored is not None:
            logger.warning(
                f"Contract addresses changed ({stored} -> {fingerprint}), wiping local tournament data"
            )
            self.db.wipe_all()
            self.db.set_config(CURRENT_KEY, None)
        self.db.set_config(FINGERPRINT_KEY, fingerprint)
        return stored is not None

    def _resolve_id(self) -> tuple[int | None, bool]:
        tournament_id = self.ledger.active_tournament_id()
        if tournament_id:
            return tournament_id, False
        local = self.db.latest_tournament_with_status(tuple(p.value for p in PRE_TERMINAL))
        if local:
            logger.info(f"No active tournament pointer, falling back to local tournament {local['id']}")
            return local["id"], True
        return None, False

    def sync_once(self, now: int | None = None) -> SyncResult:
        now = int(now if now is not None else time.time())
        result = SyncResult(wiped=self.check_fingerprint())

        try:
            tournament_id, result.fallback = self._resolve_id()
            if tournament_id is None:
                logger.debug("No tournament on the ledger")
                self.db.set_config(CURRENT_KEY, None)
                return result

            ledger_t = self.ledger.get_tournament(tournament_id)
            validate_timestamps(ledger_t)
            participants = self.ledger.get_participants(tournament_id)
        except LedgerError as e:
            logger.error(f"Ledger sync failed, keeping previous state: {e}")
            result.error = str(e)
            result.tournament = self.current(now)
            return result
        except ValueError as e:
            logger.error(f"Rejected tournament record: {e}")
            result.error = str(e)
            result.tournament = self.current(now)
            return result

        phase = derive_phase(
            ledger_t.registration_start,
            ledger_t.start_time,
            ledger_t.end_time,
            ledger_t.status_code,
            now,
        )
        previous = self.db.get_tournament(tournament_id)
        self.db.save_tournament(
            {
                "id": tournament_id,
                "registration_start": ledger_t.registration_start,
                "start_time": ledger_t.start_time,
                "end_time": ledger_t.end_time,
                "prize_pool": str(ledger_t.prize_pool),
                "entry_count": ledger_t.entry_count,
                "status": phase.value,
                "ledger_status": ledger_t.status_code,
            }
        )
        self.db.save_entries(tournament_id, participants)
        self.db.set_config(CURRENT_KEY, str(tournament_id))

        if previous is None:
            logger.info(f"Tracking tournament {tournament_id} ({phase.value}, {len(participants)} players)")
        elif previous["status"] != phase.value:
            logger.info(f"Tournament {tournament_id}: {previous['status']} -> {phase.value}")

        result.tournament = self.db.get_tournament(tournament_id)
        return result

    def current(self, now: int | None = None) -> dict[str, Any] | None:
        """The current tournament, with its phase re-derived for `now`."""
        raw = self.db.get_config(CURRENT_KEY)
        if not raw:
            return None
        return self.get(int(raw), now)

    def get(self, tournament_id: int, now: int | None = None) -> dict[str, Any] | None:
        """A mirrored tournament, with its phase re-derived for `now`."""
        tournament = self.db.get_tournament(tournament_id)
        if tournament is None:
            return None
        if tournament["status"] in (p.value for p in TERMINAL):
            return tournament
        now = int(now if now is not None else time.time())
        tournament["status"] = derive_phase(
            tournament["registration_start"],
            tournament["start_time"],
            tournament["end_time"],
            tournament["ledger_status"] or 0,
            now,
        ).value
        return tournament
