"""
fantasyyc/pipeline.py - Daily ingestion: fetch, filter, classify, store.

One run scores every tracked entity for one UTC date on a bounded thread
pool. A failing entity never stops the run. It keeps whatever score is already
stored for the date, or scores 0 when there is none, and is logged so the date
can be replayed.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from .classifier import Classifier
from .content import ContentSource, ContentSourceError, filter_noise
from .entities import EntityTable, TrackedEntity
from .scoring import ScoringEngine

logger = logging.getLogger(__name__)


@dataclass
class EntityRun:
    entity_id: int
    name: str
    base_points: float = 0.0
    item_count: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class ScoreRun:
    tournament_id: int
    date: str
    entities: list[EntityRun] = field(default_factory=list)
    chain_hash: str = ""

    @property
    def failed(self) -> list[str]:
        return [e.name for e in self.entities if e.failed]

    @property
    def total_points(self) -> float:
        return sum(e.base_points for e in self.entities)


class IngestionPipeline:
    """Scores all tracked entities for a date and stores the results."""

    def __init__(
        self,
        source: ContentSource,
        classifier: Classifier,
        engine: ScoringEngine,
        entities: EntityTable | None = None,
        workers: int = 4,
        entity_delay: float = 0.0,
    ):
        self.source = source
        self.classifier = classifier
        self.engine = engine
        self.entities = entities or engine.entities
        self.workers = max(1, workers)
        self.entity_delay = entity_delay

    def score_entity(self, tournament_id: int, entity: TrackedEntity, date: str) -> EntityRun:
        run = EntityRun(entity_id=entity.id, name=entity.name)
        try:
            items = self.source.fetch_day(entity.handle, date)
        except ContentSourceError as e:
            kept = self._stored_run(tournament_id, entity, date, str(e))
            if kept is not None:
                logger.error(
                    f"Fetch failed for {entity.name} (@{entity.handle}) on {date}, "
                    f"keeping stored {kept.base_points} pts: {e}"
                )
                return kept
            logger.error(f"Fetch failed for {entity.name} (@{entity.handle}) on {date}, scoring 0: {e}")
            run.error = str(e)
            items = []

        kept = filter_noise(items)
        results = self.classifier.classify_batch(entity.name, kept) if kept else []

        events = []
        feed = []
        for item, result in zip(kept, results):
            event = result.to_event()
            event["source_id"] = item.id
            events.append(event)
            feed.append(
                {
                    "entity_name": entity.name,
                    "category": result.category.value,
                    "points": result.score,
                    "description": result.headline or f"{entity.name}: {result.category.value}",
                    "source_id": item.id,
                    "tier": result.tier,
                }
            )

        run.base_points = round(sum(r.score for r in results), 4)
        run.item_count = len(kept)
        self.engine.record_entity_score(
            tournament_id, entity.id, date, run.base_points, run.item_count, events
        )
        self.engine.db.replace_feed_events(tournament_id, entity.id, date, feed)

        logger.info(
            f"{entity.name} {date}: {len(items)} posts, {len(kept)} scored, {run.base_points} pts"
        )
        if self.entity_delay > 0:
            time.sleep(self.entity_delay)
        return run

    def _stored_run(self, tournament_id: int, entity: TrackedEntity, date: str, error: str) -> EntityRun | None:
        """The already stored score for a failed entity, or None when the date was never scored."""
        stored = self.engine.db.get_daily_score(tournament_id, entity.id, date)
        if stored is None:
            return None
        return EntityRun(
            entity_id=entity.id,
            name=entity.name,
            base_points=stored["base_points"],
            item_count=stored["item_count"],
            error=error,
        )

    def _score_safely(self, tournament_id: int, entity: TrackedEntity, date: str) -> EntityRun:
        try:
            return self.score_entity(tournament_id, entity, date)
        except Exception as e:
            logger.exception(f"Scoring failed for {entity.name} on {date}: {e}")
            try:
                kept = self._stored_run(tournament_id, entity, date, str(e))
                if kept is not None:
                    return kept
                self.engine.record_entity_score(tournament_id, entity.id, date, 0, 0, [])
            except Exception as store_error:
                logger.error(f"Could not store zero score for {entity.name} on {date}: {store_error}")
            return EntityRun(entity_id=entity.id, name=entity.name, error=str(e))

    def score_date(self, tournament_id: int, date: str) -> ScoreRun:
        """Score every tracked entity for one date, overwriting earlier results of entities that succeed."""
        logger.info(f"Scoring tournament {tournament_id} for {date} ({len(self.entities)} entities)")
        entities = list(self.entities)
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="ingest") as pool:
            runs = list(pool.map(lambda e: self._score_safely(tournament_id, e, date), entities))

        run = ScoreRun(tournament_id=tournament_id, date=date, entities=runs)
        run.chain_hash = self.engine.link_date(tournament_id, date)
        if run.failed:
            logger.warning(f"{date}: {len(run.failed)} entities failed and need a replay: {', '.join(run.failed)}")
        logger.info(f"Scored {date}: {run.total_points} base points across {len(runs)} entities")
        return run
