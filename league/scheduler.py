"""
league/scheduler.py - Service wiring and the periodic task loops.

LeagueService holds one instance of every pipeline component and exposes the
blocking operations (sync, score a date, aggregate, finalize). Scheduler runs
them on asyncio inside the server lifespan:

    sync loop         every sync_interval seconds, then a finalization check
    daily loop        at daily_hour_utc, scores the previous UTC date
    aggregation worker consumes (tournament_id, date) from a queue

Blocking work always runs in asyncio.to_thread so the event loop stays free
for API requests.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fantasyyc.config import LeagueConfig
from fantasyyc.contract import Card, LedgerClient, LedgerError
from fantasyyc.content import ContentSource
from fantasyyc.finalizer import FinalizationFailed, FinalizationOrchestrator, FinalizeState
from fantasyyc.integrity import IntegritySigner
from fantasyyc.llm import ClassifierChain
from fantasyyc.pipeline import IngestionPipeline, ScoreRun
from fantasyyc.scoring import ScoringEngine
from fantasyyc.sync import (
    Phase,
    ScoringRefused,
    SyncResult,
    TournamentSynchronizer,
    check_scorable,
)

from .db import LeagueDB

logger = logging.getLogger(__name__)


def yesterday_utc(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (now - timedelta(days=1)).date().isoformat()


def seconds_until(hour_utc: int, now: datetime | None = None) -> float:
    """Seconds from `now` until the next HH:00:00 UTC (a full day if it is exactly now)."""
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class LeagueService:
    """All pipeline components for one deployment."""

    def __init__(
        self,
        db: LeagueDB,
        ledger: LedgerClient,
        engine: ScoringEngine,
        pipeline: IngestionPipeline,
        synchronizer: TournamentSynchronizer,
        orchestrator: FinalizationOrchestrator,
    ):
        self.db = db
        self.ledger = ledger
        self.engine = engine
        self.pipeline = pipeline
        self.synchronizer = synchronizer
        self.orchestrator = orchestrator

    @classmethod
    def build(cls, config: LeagueConfig, db: LeagueDB | None = None) -> "LeagueService":
        db = db or LeagueDB(config.scoring.db_path)
        entities = config.entity_table()
        signer = IntegritySigner.from_env(config.scoring.hmac_secret, config.chain.admin_private_key)
        ledger = LedgerClient.from_config(config.chain)
        engine = ScoringEngine(db, signer, entities)
        pipeline = IngestionPipeline(
            ContentSource.from_config(config.content),
            ClassifierChain.from_config(config.classifier),
            engine,
            entities,
            workers=config.scoring.workers,
            entity_delay=config.scoring.entity_delay,
        )
        return cls(
            db=db,
            ledger=ledger,
            engine=engine,
            pipeline=pipeline,
            synchronizer=TournamentSynchronizer(ledger, db),
            orchestrator=FinalizationOrchestrator(
                ledger, db, engine, max_attempts=config.scheduler.finalize_max_attempts
            ),
        )

    def current(self) -> dict[str, Any] | None:
        return self.synchronizer.current()

    def sync(self) -> SyncResult:
        return self.synchronizer.sync_once()

    def lineups(self, tournament_id: int) -> dict[str, list[Card]]:
        """Locked cards per participant. A player whose lineup can't be read is skipped."""
        players = self.db.get_entries(tournament_id)
        if not players:
            players = self.ledger.get_participants(tournament_id)
        lineups = {}
        for player in players:
            try:
                lineups[player] = self.ledger.get_locked_cards(tournament_id, player)
            except LedgerError as e:
                logger.error(f"Lineup read failed for {player} in tournament {tournament_id}: {e}")
        return lineups

    def check_scorable(self, tournament_id: int, date: str | None = None) -> dict[str, Any]:
        """The tournament, if `date` may still be scored for it. Raises ScoringRefused."""
        tournament = self.synchronizer.get(tournament_id)
        if tournament is None:
            raise ScoringRefused(f"Unknown tournament {tournament_id}")
        check_scorable(tournament, date)
        return tournament

    def score_date(self, tournament_id: int, date: str) -> ScoreRun:
        self.check_scorable(tournament_id, date)
        return self.pipeline.score_date(tournament_id, date)

    def aggregate(self, tournament_id: int, date: str) -> dict[str, float]:
        self.check_scorable(tournament_id, date)
        return self.engine.aggregate_date(tournament_id, date, self.lineups(tournament_id))

    def finalize(self, force: bool = False) -> FinalizeState | None:
        tournament = self.current()
        if tournament is None:
            return None
        return self.orchestrator.run(tournament, force=force)


class Scheduler:
    """Periodic loops plus the ingestion -> aggregation queue."""

    def __init__(self, service: LeagueService, sync_interval: int = 30, daily_hour_utc: int = 0):
        self.service = service
        self.sync_interval = sync_interval
        self.daily_hour_utc = daily_hour_utc
        self.queue: asyncio.Queue | None = None
        self._tasks: list[asyncio.Task] = []
        self.last_sync: str | None = None
        self.last_daily: str | None = None

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self, periodic: bool = True) -> None:
        """Start the aggregation worker, and the timed loops when `periodic`."""
        self.queue = asyncio.Queue()
        self._tasks.append(asyncio.create_task(self._aggregation_worker()))
        if periodic:
            self._tasks.append(asyncio.create_task(self._sync_loop()))
            self._tasks.append(asyncio.create_task(self._daily_loop()))
        logger.info(
            f"Scheduler started (sync every {self.sync_interval}s, daily at "
            f"{self.daily_hour_utc:02d}:00 UTC, periodic={periodic})"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def state(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "last_sync": self.last_sync,
            "last_daily": self.last_daily,
            "queued": self.queue.qsize() if self.queue else 0,
        }

    # ------------------------------------------------------------------
    # Triggers (shared by loops, admin endpoints and the CLI)
    # ------------------------------------------------------------------

    async def sync_now(self) -> SyncResult:
        result = await asyncio.to_thread(self.service.sync)
        self.last_sync = datetime.now(timezone.utc).isoformat()
        return result

    async def finalize_now(self, force: bool = False) -> FinalizeState | None:
        try:
            return await asyncio.to_thread(self.service.finalize, force)
        except FinalizationFailed as e:
            # Already logged with the full vector; the operator retries with force.
            logger.error(f"Finalization needs manual recovery: {e}")
            return FinalizeState.FAILED

    async def enqueue(self, tournament_id: int, date: str) -> None:
        """Queue a scored date for aggregation; runs inline when the worker isn't started."""
        if self.queue is None:
            await asyncio.to_thread(self.service.aggregate, tournament_id, date)
            await self.finalize_now()
            return
        await self.queue.put((tournament_id, date))

    async def score_now(self, tournament_id: int, date: str) -> ScoreRun:
        """Ingest a date, then hand it to the aggregation worker."""
        run = await asyncio.to_thread(self.service.score_date, tournament_id, date)
        await self.enqueue(tournament_id, date)
        return run

    async def run_daily(self, date: str | None = None) -> ScoreRun | None:
        date = date or yesterday_utc()
        tournament = self.service.current()
        if tournament is None:
            logger.info("Daily scoring: no current tournament, skipping")
            return None
        try:
            run = await self.score_now(tournament["id"], date)
        except ScoringRefused as e:
            logger.info(f"Daily scoring skipped: {e}")
            return None
        self.last_daily = date
        return run

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _sync_loop(self) -> None:
        while True:
            try:
                result = await self.sync_now()
                if result.phase == Phase.ENDED:
                    await self.finalize_now()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Sync loop error: {e}")
            await asyncio.sleep(self.sync_interval)

    async def _daily_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until(self.daily_hour_utc))
            try:
                await self.run_daily()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Daily scoring failed: {e}")

    async def _aggregation_worker(self) -> None:
        while True:
            tournament_id, date = await self.queue.get()
            try:
                await asyncio.to_thread(self.service.aggregate, tournament_id, date)
                await self.finalize_now()
            except asyncio.CancelledError:
                raise
            except ScoringRefused as e:
                logger.warning(f"Aggregation skipped: {e}")
            except Exception as e:
                logger.exception(f"Aggregation failed for tournament {tournament_id} on {date}: {e}")
            finally:
                self.queue.task_done()
