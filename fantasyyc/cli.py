#!/usr/bin/env python3
"""
fantasyyc/cli.py - Command line interface for FantasyYC

Usage:
    fantasyyc serve [--port 8000] [--db league.db]
    fantasyyc sync
    fantasyyc score [--date YYYY-MM-DD] [--tournament ID]
    fantasyyc finalize [--force]
    fantasyyc leaderboard [--tournament ID] [--limit 20]
    fantasyyc chain [--tournament ID]
    fantasyyc classify "post text" [--likes N]
"""

import argparse
import logging
import sys
from pathlib import Path

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _config(args):
    from fantasyyc.config import load_config

    config = load_config(Path(args.config) if args.config else None)
    if getattr(args, "db", None):
        config.scoring.db_path = args.db
    return config


def _service(args):
    from fantasyyc.integrity import IntegrityError
    from league.scheduler import LeagueService

    try:
        return LeagueService.build(_config(args))
    except IntegrityError as e:
        logger.error(f"{e}. Set SCORE_HMAC_SECRET or ADMIN_PRIVATE_KEY.")
        return None


def _tournament_id(service, args) -> int | None:
    if getattr(args, "tournament", None):
        return args.tournament
    current = service.current()
    if current is None:
        result = service.sync()
        current = result.tournament
    if current is None:
        logger.error("No current tournament (use --tournament)")
        return None
    return current["id"]


def cmd_serve(args):
    """Start the scoring server."""
    try:
        import uvicorn
    except ImportError:
        logger.error("Serving requires uvicorn: pip install fantasyyc")
        return 1

    from league.server import app

    # Lifespan picks these up
    app.state.config = _config(args)
    app.state.db_path = args.db
    logger.info(f"Starting league server on port {args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return 0


def cmd_sync(args):
    """Run one synchronizer pass and print the current tournament."""
    service = _service(args)
    if service is None:
        return 1
    result = service.sync()
    if result.error:
        logger.error(f"Sync failed: {result.error}")
        return 1
    if result.wiped:
        logger.warning("Contract set changed, local data wiped")
    t = result.tournament
    if t is None:
        logger.info("No tournament on the ledger")
        return 0
    logger.info(
        f"Tournament #{t['id']} | {t['status']} | players={t['entry_count']} | pool={t['prize_pool']} wei"
        + (" (fallback)" if result.fallback else "")
    )
    return 0


def cmd_score(args):
    """Ingest one date, then aggregate player scores."""
    from fantasyyc.sync import ScoringRefused
    from league.scheduler import yesterday_utc

    service = _service(args)
    if service is None:
        return 1
    tournament_id = _tournament_id(service, args)
    if tournament_id is None:
        return 1
    date = args.date or yesterday_utc()

    try:
        run = service.score_date(tournament_id, date)
    except ScoringRefused as e:
        logger.error(str(e))
        return 1
    logger.info(f"Scored {date}: {run.total_points} base points, chain {run.chain_hash[:16]}")
    for entity in run.entities:
        flag = f" FAILED: {entity.error}" if entity.failed else ""
        logger.info(f"  {entity.name:20s} {entity.item_count:3d} posts {entity.base_points:8.1f} pts{flag}")

    if args.no_aggregate:
        return 0 if not run.failed else 2
    try:
        players = service.aggregate(tournament_id, date)
    except ScoringRefused as e:
        logger.error(str(e))
        return 1
    logger.info(f"Aggregated {len(players)} players")
    return 0 if not run.failed else 2


def cmd_finalize(args):
    """Run a finalization check for the current tournament."""
    from fantasyyc.finalizer import FinalizationFailed

    service = _service(args)
    if service is None:
        return 1
    service.sync()
    try:
        state = service.finalize(force=args.force)
    except FinalizationFailed as e:
        logger.error(str(e))
        return 1
    if state is None:
        logger.info("No current tournament")
        return 0
    logger.info(f"Finalization state: {state.value}")
    return 0


def cmd_leaderboard(args):
    """Print the leaderboard."""
    from rich.console import Console
    from rich.table import Table
    from rich.text import Text

    service = _service(args)
    if service is None:
        return 1
    tournament_id = _tournament_id(service, args)
    if tournament_id is None:
        return 1
    console = Console()
    rows = service.engine.leaderboard(tournament_id, args.limit)
    if not rows:
        console.print(f"No scores yet for tournament #{tournament_id}")
        return 0

    table = Table(title=f"Tournament #{tournament_id}", show_header=True, header_style="bold cyan")
    table.add_column("Rank", justify="right")
    table.add_column("Player", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Verified")
    for row in rows:
        style = "green" if row["verified"] == "valid" else "bold red"
        table.add_row(
            str(row["rank"]), row["player"], f"{row['total_score']:.1f}", Text(row["verified"], style=style)
        )
    console.print(table)
    return 0


def cmd_chain(args):
    """Verify the daily integrity chain."""
    from rich.console import Console
    from rich.table import Table
    from rich.text import Text

    service = _service(args)
    if service is None:
        return 1
    tournament_id = _tournament_id(service, args)
    if tournament_id is None:
        return 1
    console = Console()
    links = service.engine.verify_chain(tournament_id)
    broken = [link for link in links if not link["valid"]]

    table = Table(title=f"Integrity chain, tournament #{tournament_id}", header_style="bold cyan")
    table.add_column("Date")
    table.add_column("Hash")
    table.add_column("Status")
    for link in links:
        status = Text("ok", style="green") if link["valid"] else Text("BROKEN", style="bold red")
        table.add_row(link["date"], f"{link['hash'][:16]}...", status)
    console.print(table)
    console.print(f"{len(links)} links, {len(broken)} broken")
    return 1 if broken else 0


def cmd_classify(args):
    """Classify one post with the rule classifier."""
    from fantasyyc.classifier import ContentItem, classify

    item = ContentItem(
        id="cli",
        text=args.text,
        like_count=args.likes,
        repost_count=args.reposts,
        view_count=args.views,
    )
    result = classify(item)
    print(f"{result.category.value}: {result.score:g} ({result.details})")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="fantasyyc",
        description="FantasyYC tournament scoring",
    )
    parser.add_argument("--config", help="Config file (default: ~/.fantasyyc/config.toml)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the scoring server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Server port (default: 8000)")
    serve_parser.add_argument("--db", help="SQLite database path (default: from config)")
    serve_parser.set_defaults(func=cmd_serve)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Read tournament state from the ledger")
    sync_parser.add_argument("--db", help="SQLite database path")
    sync_parser.set_defaults(func=cmd_sync)

    # score command
    score_parser = subparsers.add_parser("score", help="Score a date (default: yesterday UTC)")
    score_parser.add_argument("--date", help="Date to score, YYYY-MM-DD")
    score_parser.add_argument("--tournament", "-t", type=int, help="Tournament id (default: current)")
    score_parser.add_argument("--no-aggregate", action="store_true", help="Skip player aggregation")
    score_parser.add_argument("--db", help="SQLite database path")
    score_parser.set_defaults(func=cmd_score)

    # finalize command
    fin_parser = subparsers.add_parser("finalize", help="Submit final points if the tournament ended")
    fin_parser.add_argument("--force", action="store_true", help="Retry after a recorded failure")
    fin_parser.add_argument("--db", help="SQLite database path")
    fin_parser.set_defaults(func=cmd_finalize)

    # leaderboard command
    lb_parser = subparsers.add_parser("leaderboard", help="Show the leaderboard")
    lb_parser.add_argument("--tournament", "-t", type=int, help="Tournament id (default: current)")
    lb_parser.add_argument("--limit", "-n", type=int, default=20, help="Rows to show (default: 20)")
    lb_parser.add_argument("--db", help="SQLite database path")
    lb_parser.set_defaults(func=cmd_leaderboard)

    # chain command
    chain_parser = subparsers.add_parser("chain", help="Verify the daily integrity chain")
    chain_parser.add_argument("--tournament", "-t", type=int, help="Tournament id (default: current)")
    chain_parser.add_argument("--db", help="SQLite database path")
    chain_parser.set_defaults(func=cmd_chain)

    # classify command
    cls_parser = subparsers.add_parser("classify", help="Run the rule classifier on a post")
    cls_parser.add_argument("text", help="Post text")
    cls_parser.add_argument("--likes", type=int, default=0)
    cls_parser.add_argument("--reposts", type=int, default=0)
    cls_parser.add_argument("--views", type=int, default=0)
    cls_parser.set_defaults(func=cmd_classify)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
