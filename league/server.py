"""
league/server.py - FastAPI scoring server for FantasyYC.

Endpoints:
    GET    /health                              Server health check
    GET    /api/tournaments/active              Current tournament
    GET    /api/tournaments/{id}                One tournament
    GET    /api/leaderboard/{tid}               Ranked leaderboard with verification flags
    GET    /api/player/{addr}/rank/{tid}        One player's rank
    GET    /api/player/{addr}/history/{tid}     Player daily scores
    GET    /api/player/{addr}/cards/{tid}       Cards used for the player's last aggregation
    GET    /api/daily-scores/{tid}/{date}       Entity scores for a date
    GET    /api/entities                        Tracked entities with rarity and multiplier
    GET    /api/entities/{eid}/history/{tid}    One entity's daily scores
    GET    /api/stats/{tid}                     Tournament stats
    GET    /api/feed                            Live feed events

Admin (X-Admin-Key header):
    POST   /admin/score                         Ingest + aggregate a date
    POST   /admin/finalize                      Force a finalization check
    POST   /admin/sync                          Force a synchronizer pass
"""

import hmac
import logging
import os
from contextlib import asynccontextmanager
from datetime import date as date_type
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

from fantasyyc.config import LeagueConfig, load_config
from fantasyyc.contract import contract_fingerprint
from fantasyyc.sync import DateOutOfRange, ScoringRefused, TournamentClosed

from .db import LeagueDB
from .scheduler import LeagueService, Scheduler, yesterday_utc

logger = logging.getLogger(__name__)


# Globals set during lifespan
_db: LeagueDB | None = None
_service: LeagueService | None = None
_scheduler: Scheduler | None = None
_config: LeagueConfig | None = None


def get_db() -> LeagueDB:
    assert _db is not None, "DB not initialized"
    return _db


def get_service() -> LeagueService:
    assert _service is not None, "Service not initialized"
    return _service


def get_scheduler() -> Scheduler:
    assert _scheduler is not None, "Scheduler not initialized"
    return _scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _db, _service, _scheduler, _config
    _config = getattr(app.state, "config", None) or load_config()
    db_path = getattr(app.state, "db_path", None) or _config.scoring.db_path
    _db = LeagueDB(db_path)
    logger.info(f"League DB initialized: {db_path}")

    _service = LeagueService.build(_config, _db)
    _scheduler = Scheduler(
        _service,
        sync_interval=_config.scheduler.sync_interval,
        daily_hour_utc=_config.scheduler.daily_hour_utc,
    )
    _log_startup_config(_config)
    await _scheduler.start(periodic=_config.scheduler.enabled)

    yield

    await _scheduler.stop()
    _scheduler = None
    _service = None
    _db = None


def _log_startup_config(config: LeagueConfig):
    """Log configuration on startup so operators can verify env vars."""
    chain = config.chain
    logger.info("=" * 50)
    logger.info("League startup config:")
    logger.info(f"  Chain: {chain.chain_id} | RPC: {chain.rpc_url}")
    logger.info(f"  TournamentManager: {chain.tournament_manager}")
    logger.info(f"  PackOpener: {chain.pack_opener}")
    logger.info(f"  NFT: {chain.nft}")
    logger.info(f"  Fingerprint: {contract_fingerprint(chain.contract_addresses())}")

    if chain.admin_private_key:
        logger.info("  Admin key: set (finalization enabled)")
    else:
        logger.warning("  Admin key: NOT configured (ADMIN_PRIVATE_KEY missing)")
        logger.warning("  → Finalization DISABLED, ended tournaments will wait")

    if config.scoring.hmac_secret or os.environ.get("SCORE_HMAC_SECRET"):
        logger.info("  Score HMAC secret: set")
    else:
        logger.info("  Score HMAC secret: derived from admin key")

    if not config.content.api_key:
        logger.warning("  Content API key: NOT configured (TWITTER_API_KEY missing), every entity scores 0")
    if config.classifier.api_key:
        logger.info(f"  Classifier tiers: {', '.join(config.classifier.models)} → rules")
    else:
        logger.info("  Classifier tiers: rules only (OPENROUTER_API_KEY not set)")

    if not config.admin_api_key:
        logger.warning("  Admin API: DISABLED (ADMIN_API_KEY not set)")
    logger.info(f"  Entities: {len(config.entities)}")
    logger.info("=" * 50)


app = FastAPI(title="FantasyYC League", lifespan=lifespan)

# Allow the frontend to call the read API
from starlette.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ======================================================================
# Admin auth
# ======================================================================


def _admin_key() -> str | None:
    if _config is not None and _config.admin_api_key:
        return _config.admin_api_key
    return os.environ.get("ADMIN_API_KEY")


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    expected = _admin_key()
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin key")


# ======================================================================
# Request/Response Models
# ======================================================================


class TournamentResponse(BaseModel):
    id: int
    registration_start: int
    start_time: int
    end_time: int
    prize_pool: str  # wei, decimal string
    entry_count: int
    status: str
    ledger_status: int | None = None
    updated_at: str | None = None


class LeaderboardEntry(BaseModel):
    rank: int
    player: str
    total_score: float
    verified: str  # valid | invalid | unknown
    last_updated: str | None = None


class LeaderboardResponse(BaseModel):
    tournament_id: int
    entries: list[LeaderboardEntry]


class DailyScoreEntry(BaseModel):
    entity_id: int
    entity_name: str
    date: str
    base_points: float
    item_count: int
    events: list[dict[str, Any]] = []
    verified: str


class EntityEntry(BaseModel):
    id: int
    name: str
    handle: str
    rarity: str
    multiplier: int


class PlayerDayEntry(BaseModel):
    date: str
    points: float
    breakdown: dict[str, Any] = {}
    verified: str


class CardEntry(BaseModel):
    token_id: int
    entity_id: int
    entity_name: str | None = None
    rarity: str
    multiplier: int


class StatsResponse(BaseModel):
    tournament_id: int
    total_players: int
    avg_score: float | None = None
    max_score: float | None = None
    min_score: float | None = None
    scored_days: int


class FeedEntry(BaseModel):
    entity_id: int
    entity_name: str
    category: str
    points: float
    description: str | None = None
    source_id: str | None = None
    date: str
    tier: str | None = None


class HealthResponse(BaseModel):
    status: str
    tournament_id: int | None = None
    tournament_status: str | None = None
    scheduler: dict[str, Any] = {}


class ScoreRequest(BaseModel):
    date: str | None = None  # YYYY-MM-DD, default yesterday UTC
    tournament_id: int | None = None  # default current tournament


class ScoreResponse(BaseModel):
    tournament_id: int
    date: str
    total_points: float
    entities: int
    failed: list[str] = []
    chain_hash: str


class FinalizeRequest(BaseModel):
    force: bool = False


# ======================================================================
# Helpers
# ======================================================================


def _tournament_or_404(tournament_id: int) -> dict[str, Any]:
    tournament = get_db().get_tournament(tournament_id)
    if tournament is None:
        raise HTTPException(status_code=404, detail="Tournament not found")
    return tournament


def _valid_date(value: str) -> str:
    try:
        return date_type.fromisoformat(value).isoformat()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value} (expected YYYY-MM-DD)")


# ======================================================================
# Endpoints
# ======================================================================


@app.get("/health", response_model=HealthResponse)
def health() -> dict[str, Any]:
    current = get_service().current()
    return {
        "status": "ok",
        "tournament_id": current["id"] if current else None,
        "tournament_status": current["status"] if current else None,
        "scheduler": _scheduler.state() if _scheduler else {},
    }


@app.get("/api/tournaments/active", response_model=TournamentResponse)
def active_tournament() -> dict[str, Any]:
    current = get_service().current()
    if current is None:
        raise HTTPException(status_code=404, detail="No active tournament")
    return current


@app.get("/api/tournaments/{tournament_id}", response_model=TournamentResponse)
def get_tournament(tournament_id: int) -> dict[str, Any]:
    return _tournament_or_404(tournament_id)


@app.get("/api/leaderboard/{tournament_id}", response_model=LeaderboardResponse)
def leaderboard(tournament_id: int, limit: int = 100) -> dict[str, Any]:
    limit = max(1, min(limit, 1000))
    return {
        "tournament_id": tournament_id,
        "entries": get_service().engine.leaderboard(tournament_id, limit),
    }


@app.get("/api/player/{address}/rank/{tournament_id}", response_model=LeaderboardEntry)
def player_rank(address: str, tournament_id: int) -> dict[str, Any]:
    row = get_service().engine.player_rank(tournament_id, address)
    if row is None:
        raise HTTPException(status_code=404, detail="Player not on leaderboard")
    return row


@app.get("/api/player/{address}/history/{tournament_id}", response_model=list[PlayerDayEntry])
def player_history(address: str, tournament_id: int) -> list[dict[str, Any]]:
    return get_service().engine.player_history(tournament_id, address)


@app.get("/api/player/{address}/cards/{tournament_id}", response_model=list[CardEntry])
def player_cards(address: str, tournament_id: int) -> list[dict[str, Any]]:
    return get_db().get_player_cards(tournament_id, address)


@app.get("/api/daily-scores/{tournament_id}/{date}", response_model=list[DailyScoreEntry])
def daily_scores(tournament_id: int, date: str) -> list[dict[str, Any]]:
    return get_service().engine.entity_daily_scores(tournament_id, _valid_date(date))


@app.get("/api/entities", response_model=list[EntityEntry])
def entities() -> list[dict[str, Any]]:
    return get_service().engine.entity_listing()


@app.get("/api/entities/{entity_id}/history/{tournament_id}", response_model=list[DailyScoreEntry])
def entity_history(entity_id: int, tournament_id: int) -> list[dict[str, Any]]:
    engine = get_service().engine
    if engine.entities.get(entity_id) is None:
        raise HTTPException(status_code=404, detail="Entity not found")
    return engine.entity_history(tournament_id, entity_id)


@app.get("/api/stats/{tournament_id}", response_model=StatsResponse)
def stats(tournament_id: int) -> dict[str, Any]:
    _tournament_or_404(tournament_id)
    result = get_service().engine.tournament_stats(tournament_id)
    result["tournament_id"] = tournament_id
    return result


@app.get("/api/feed", response_model=list[FeedEntry])
def feed(limit: int = 50) -> list[dict[str, Any]]:
    return get_db().get_feed(max(1, min(limit, 500)))


@app.post("/admin/score", response_model=ScoreResponse, dependencies=[Depends(require_admin)])
async def admin_score(req: ScoreRequest) -> dict[str, Any]:
    """Ingest and aggregate one date. Re-running a date overwrites it."""
    day = _valid_date(req.date) if req.date else yesterday_utc()
    tournament_id = req.tournament_id
    if tournament_id is None:
        current = get_service().current()
        if current is None:
            raise HTTPException(status_code=404, detail="No active tournament")
        tournament_id = current["id"]
    else:
        _tournament_or_404(tournament_id)

    try:
        run = await get_scheduler().score_now(tournament_id, day)
    except TournamentClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DateOutOfRange as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ScoringRefused as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "tournament_id": tournament_id,
        "date": day,
        "total_points": run.total_points,
        "entities": len(run.entities),
        "failed": run.failed,
        "chain_hash": run.chain_hash,
    }


@app.post("/admin/finalize", dependencies=[Depends(require_admin)])
async def admin_finalize(req: FinalizeRequest | None = None) -> dict[str, Any]:
    force = req.force if req else False
    state = await get_scheduler().finalize_now(force=force)
    current = get_service().current()
    return {
        "tournament_id": current["id"] if current else None,
        "state": state.value if state else None,
    }


@app.post("/admin/sync", dependencies=[Depends(require_admin)])
async def admin_sync() -> dict[str, Any]:
    result = await get_scheduler().sync_now()
    return {
        "tournament": result.tournament,
        "wiped": result.wiped,
        "fallback": result.fallback,
        "error": result.error,
    }
