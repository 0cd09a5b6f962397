"""
fantasyyc/finalizer.py - Submits the final score vector to the ledger, once.

finalizeWithPoints() is one-shot on the contract side, and a send that fails
on the network may still have landed. So the orchestrator never retries
blindly: after any send error it re-reads the tournament status, and only
sends again while the ledger still reports the tournament as unfinalized.

    Waiting -> Aggregating -> Submitting -> Confirmed
                                         -> Failed

A tournament the ledger already reports as Finalized or Cancelled goes
straight from Waiting to Confirmed without a single write. Only days inside
the tournament's UTC play window count toward the vector, and a row in
finalization_claims keeps two processes on one database from both sending.
"""

import logging
import threading
import time
import uuid
from enum import Enum
from typing import Any

from league.db import LeagueDB

from .contract import (
    STATUS_CANCELLED,
    STATUS_FINALIZED,
    TERMINAL_STATUSES,
    LedgerClient,
    LedgerError,
    TransactionReverted,
)
from .scoring import ScoringEngine
from .sync import Phase, derive_phase, tournament_dates

logger = logging.getLogger(__name__)


class FinalizeState(str, Enum):
    WAITING = "waiting"
    AGGREGATING = "aggregating"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class FinalizationFailed(RuntimeError):
    """Finalization gave up. Carries what an operator needs to recover by hand."""

    def __init__(self, tournament_id: int, reason: str, vector: list[int] | None, last_status: int | None):
        super().__init__(
            f"Finalization of tournament {tournament_id} failed: {reason} "
            f"(last ledger status {last_status}, vector {vector})"
        )
        self.tournament_id = tournament_id
        self.reason = reason
        self.vector = vector
        self.last_status = last_status


class FinalizationOrchestrator:
    """Drives one tournament at a time through the finalization states.

    Args:
        ledger: Ledger client with the admin account loaded.
        db: Local store (attempt log and tournament status).
        engine: Scoring engine that sums daily entity scores.
        max_attempts: Sends allowed before giving up.
        retry_delay: Seconds between a failed send and the status re-check.
        claim_timeout: Seconds after which another process's finalization claim
            is considered abandoned.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        db: LeagueDB,
        engine: ScoringEngine,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        claim_timeout: float = 600.0,
    ):
        self.ledger = ledger
        self.db = db
        self.engine = engine
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.claim_timeout = claim_timeout
        self.owner = uuid.uuid4().hex
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._states: dict[int, FinalizeState] = {}
        self._sleep = time.sleep

    def state(self, tournament_id: int) -> FinalizeState:
        return self._states.get(tournament_id, FinalizeState.WAITING)

    def _lock_for(self, tournament_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(tournament_id, threading.Lock())

    def _set(self, tournament_id: int, state: FinalizeState) -> None:
        previous = self._states.get(tournament_id)
        self._states[tournament_id] = state
        if previous != state:
            logger.debug(f"Tournament {tournament_id}: finalization {state.value}")

    def _try_status(self, tournament_id: int) -> int | None:
        try:
            return self.ledger.get_status(tournament_id)
        except LedgerError as e:
            logger.warning(f"Status read failed for tournament {tournament_id}: {e}")
            return None

    def run(
        self, tournament: dict[str, Any], now: int | None = None, force: bool = False
    ) -> FinalizeState:
        """Advance finalization as far as the ledger allows.

        A concurrent call for the same tournament, from this process or another
        one sharing the database, returns the current state without acting.
        A tournament that already failed stays Failed until a forced run.
        Raises FinalizationFailed on a terminal failure.
        """
        tournament_id = tournament["id"]
        lock = self._lock_for(tournament_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Finalization of tournament {tournament_id} already running")
            return self.state(tournament_id)
        try:
            if not self.db.claim_finalization(tournament_id, self.owner, self.claim_timeout):
                logger.info(f"Finalization of tournament {tournament_id} claimed by another process")
                return self.state(tournament_id)
            try:
                return self._run(tournament, int(now if now is not None else time.time()), force)
            finally:
                self.db.release_finalization(tournament_id, self.owner)
        finally:
            lock.release()

    def _run(self, tournament: dict[str, Any], now: int, force: bool) -> FinalizeState:
        tournament_id = tournament["id"]
        if self.state(tournament_id) == FinalizeState.CONFIRMED:
            return FinalizeState.CONFIRMED
        if self.state(tournament_id) == FinalizeState.FAILED and not force:
            return FinalizeState.FAILED
        self._set(tournament_id, FinalizeState.WAITING)

        # Waiting
        status = self._try_status(tournament_id)
        if status is None:
            return FinalizeState.WAITING
        if status in TERMINAL_STATUSES:
            return self._confirm_terminal(tournament_id, status)

        phase = derive_phase(
            tournament["registration_start"],
            tournament["start_time"],
            tournament["end_time"],
            status,
            now,
        )
        if phase != Phase.ENDED:
            return FinalizeState.WAITING

        if self.ledger.account is None:
            logger.warning(
                f"Tournament {tournament_id} has ended but no admin key is configured, "
                "marking it ended and waiting"
            )
            self.db.update_tournament_status(tournament_id, Phase.ENDED.value)
            return FinalizeState.WAITING

        # Aggregating
        self._set(tournament_id, FinalizeState.AGGREGATING)
        start_date, end_date = tournament_dates(tournament)
        vector = self.engine.score_vector(tournament_id, start_date, end_date)
        logger.info(f"Tournament {tournament_id} final points: {vector}")

        # Submitting
        self._set(tournament_id, FinalizeState.SUBMITTING)
        tx_hash = self._submit(tournament_id, vector, status)

        # Confirmed
        status = self._confirmed_status(tournament_id)
        if status == STATUS_FINALIZED:
            self.db.update_tournament_status(tournament_id, Phase.FINALIZED.value, status)
            self.db.record_finalization(
                tournament_id, FinalizeState.CONFIRMED.value, vector, tx_hash, status
            )
            self._set(tournament_id, FinalizeState.CONFIRMED)
            logger.info(f"Tournament {tournament_id} finalized (tx {tx_hash or 'by another sender'})")
            return FinalizeState.CONFIRMED
        if status == STATUS_CANCELLED:
            return self._confirm_terminal(tournament_id, status)
        self._fail(tournament_id, "ledger does not report Finalized after submission", vector, status)

    def _confirmed_status(self, tournament_id: int) -> int | None:
        """Status after a send, re-read up to max_attempts times on read failures."""
        for attempt in range(self.max_attempts):
            if attempt:
                self._sleep(self.retry_delay)
            status = self._try_status(tournament_id)
            if status is not None:
                return status
        return None

    def _confirm_terminal(self, tournament_id: int, status: int) -> FinalizeState:
        phase = Phase.FINALIZED if status == STATUS_FINALIZED else Phase.CANCELLED
        logger.info(f"Tournament {tournament_id} already {phase.value} on the ledger, nothing to submit")
        self.db.update_tournament_status(tournament_id, phase.value, status)
        self._set(tournament_id, FinalizeState.CONFIRMED)
        return FinalizeState.CONFIRMED

    def _submit(self, tournament_id: int, vector: list[int], last_status: int | None) -> str | None:
        """Send until one send lands or the ledger turns terminal. Returns the tx hash."""
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                self._sleep(self.retry_delay)
                last_status = self._try_status(tournament_id)
                if last_status is None:
                    continue
                if last_status in TERMINAL_STATUSES:
                    return None
            try:
                tx_hash = self.ledger.finalize_with_points(tournament_id, vector)
            except TransactionReverted as e:
                self.db.record_finalization(
                    tournament_id, FinalizeState.SUBMITTING.value, vector, None, last_status, str(e)
                )
                status = self._try_status(tournament_id)
                if status in TERMINAL_STATUSES:
                    return None
                self._fail(tournament_id, f"transaction reverted: {e}", vector, status)
            except Exception as e:
                logger.warning(
                    f"finalizeWithPoints({tournament_id}) attempt {attempt}/{self.max_attempts} failed: {e}"
                )
                self.db.record_finalization(
                    tournament_id, FinalizeState.SUBMITTING.value, vector, None, last_status, str(e)
                )
                last_status = self._try_status(tournament_id)
                if last_status in TERMINAL_STATUSES:
                    return None
                continue
            self.db.record_finalization(
                tournament_id, FinalizeState.SUBMITTING.value, vector, tx_hash, last_status
            )
            return tx_hash

        self._fail(tournament_id, f"no send landed after {self.max_attempts} attempts", vector, last_status)

    def _fail(self, tournament_id: int, reason: str, vector: list[int], last_status: int | None):
        self._set(tournament_id, FinalizeState.FAILED)
        self.db.record_finalization(
            tournament_id, FinalizeState.FAILED.value, vector, None, last_status, reason
        )
        logger.error(
            f"FINALIZATION FAILED for tournament {tournament_id}: {reason}. "
            f"Last ledger status: {last_status}. Vector: {vector}"
        )
        raise FinalizationFailed(tournament_id, reason, vector, last_status)
