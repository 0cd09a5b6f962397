"""Shared fixtures: in-memory DB, signer, and an in-process fake ledger."""

import pytest

from fantasyyc.contract import (
    STATUS_ACTIVE,
    STATUS_FINALIZED,
    Card,
    LedgerError,
    LedgerTournament,
)
from fantasyyc.entities import EntityTable
from fantasyyc.integrity import IntegritySigner
from fantasyyc.scoring import ScoringEngine
from league.db import LeagueDB

DAY = 86400
ADDRESSES = {
    "tournament_manager": "0xdDAC8b96506E46123878e84d456f8Db1DCFd1092",
    "pack_opener": "0xc408b65F312d5F4eb7688d621187F76e2C2A5f96",
    "nft": "0x612ca7a970547087d2a4871eb313BEfd674073D8",
}


class FakeLedger:
    """Stands in for LedgerClient. Finalizing flips the status to Finalized."""

    def __init__(self):
        self.addresses = dict(ADDRESSES)
        self.account = object()
        self.active_id = 0
        self.tournaments: dict[int, LedgerTournament] = {}
        self.participants: dict[int, list[str]] = {}
        self.cards: dict[tuple[int, str], list[Card]] = {}
        self.finalize_calls: list[tuple[int, list[int]]] = []
        # Per-call outcomes for finalize_with_points: None = success, or an exception
        self.finalize_effects: list[Exception | None] = []
        # Apply the finalize even when the call raises (a send that landed)
        self.land_on_error = False
        self.fail_reads = False
        # Reads that fail once a finalize has been sent
        self.flaky_reads_after_send = 0
        self._flaky_reads = 0

    def add_tournament(
        self, tid, registration_start, start_time, end_time, status=STATUS_ACTIVE, players=(), active=True
    ):
        self.tournaments[tid] = LedgerTournament(
            id=tid,
            registration_start=registration_start,
            start_time=start_time,
            end_time=end_time,
            prize_pool=10**18,
            entry_count=len(players),
            status_code=status,
        )
        self.participants[tid] = [p.lower() for p in players]
        if active:
            self.active_id = tid

    def _check(self):
        if self.fail_reads:
            raise LedgerError("rpc unavailable")
        if self._flaky_reads:
            self._flaky_reads -= 1
            raise LedgerError("rpc timeout")

    def active_tournament_id(self):
        self._check()
        return self.active_id

    def get_tournament(self, tid):
        self._check()
        if tid not in self.tournaments:
            raise LedgerError(f"getTournament({tid}) failed: unknown")
        return self.tournaments[tid]

    def get_status(self, tid):
        return self.get_tournament(tid).status_code

    def get_participants(self, tid):
        self._check()
        return list(self.participants.get(tid, []))

    def get_locked_cards(self, tid, player):
        self._check()
        return list(self.cards.get((tid, player.lower()), []))

    def finalize_with_points(self, tid, points):
        self.finalize_calls.append((tid, list(points)))
        self._flaky_reads = self.flaky_reads_after_send
        effect = self.finalize_effects.pop(0) if self.finalize_effects else None
        if effect is not None:
            if self.land_on_error:
                self.tournaments[tid].status_code = STATUS_FINALIZED
            raise effect
        self.tournaments[tid].status_code = STATUS_FINALIZED
        return f"0x{len(self.finalize_calls):064x}"


@pytest.fixture
def db():
    """Fresh in-memory DB for each test."""
    return LeagueDB(":memory:")


@pytest.fixture
def signer():
    return IntegritySigner("test-secret")


@pytest.fixture
def entities():
    return EntityTable()


@pytest.fixture
def engine(db, signer, entities):
    return ScoringEngine(db, signer, entities)


@pytest.fixture
def ledger():
    return FakeLedger()
