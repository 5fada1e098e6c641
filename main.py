"""Command line entry point for the indexer and reconciler.

Usage:
    python main.py run                      # poll + periodic reconciliation
    python main.py index-once               # one cursor pass
    python main.py reindex --from-block N   # reset the cursor and run
    python main.py index-range FROM TO      # replay without moving the cursor
    python main.py sweep [--limit N] [--expire] [--dry-run]
    python main.py drift-report [--limit N]
    python main.py repair-hashes [--limit N] [--offset N] [--dry-run]
"""
import argparse
import asyncio
import json
import logging
import signal
import sys

from config import load_config, SettingsError
from database import init_db, close as db_close
from monitor import Engine, build_engine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _print(result) -> None:
    print(json.dumps(result.to_dict(), indent=2, default=str))


async def run_forever(engine: Engine) -> None:
    """Poll for events and sweep periodically until interrupted."""
    settings = engine.settings
    loop = asyncio.get_running_loop()

    def shutdown():
        logger.info("Shutdown signal received. Cleaning up...")
        engine.indexer.stop()
        engine.reconciler.stop()
        for task in tasks:
            task.cancel()

    tasks = [
        asyncio.create_task(engine.indexer.start(settings['poll_interval']), name="indexer"),
        asyncio.create_task(
            engine.reconciler.start(settings['reconcile_interval'], settings['reconcile_batch_size']),
            name="reconciler"
        ),
    ]
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown)

    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        pass


async def dispatch(args: argparse.Namespace, engine: Engine) -> int:
    if args.command == 'run':
        await run_forever(engine)
        return 0

    if args.command == 'index-once':
        result = await engine.indexer.run_once()
    elif args.command == 'reindex':
        result = await engine.indexer.reindex_from(args.from_block)
    elif args.command == 'index-range':
        result = await engine.indexer.index_range(args.from_block, args.to_block)
    elif args.command == 'sweep':
        limit = args.limit or engine.settings['reconcile_batch_size']
        result = await engine.reconciler.sweep(limit, expire=args.expire, dry_run=args.dry_run)
    elif args.command == 'drift-report':
        result = await engine.reconciler.drift_report(args.limit)
    else:
        result = await engine.reconciler.repair_order_hashes(
            args.limit, offset=args.offset, dry_run=args.dry_run
        )

    _print(result)
    return 1 if result.errors else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marketplace event indexer")
    parser.add_argument('--settings', default='.', help="Directory holding settings.conf")
    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('run', help="Poll for events and reconcile periodically")
    commands.add_parser('index-once', help="Index the next range after the cursor")

    reindex = commands.add_parser('reindex', help="Reset the cursor and run one pass")
    reindex.add_argument('--from-block', type=int, required=True)

    index_range = commands.add_parser('index-range', help="Replay a block range")
    index_range.add_argument('from_block', type=int)
    index_range.add_argument('to_block', type=int)

    sweep = commands.add_parser('sweep', help="Reconcile open rows against contract state")
    sweep.add_argument('--limit', type=int)
    sweep.add_argument('--expire', action='store_true', help="Close expired rows still open on-chain")
    sweep.add_argument('--dry-run', action='store_true')

    drift = commands.add_parser('drift-report', help="Report drift without correcting it")
    drift.add_argument('--limit', type=int, default=100)

    repair = commands.add_parser('repair-hashes', help="Recompute stored Seaport order hashes")
    repair.add_argument('--limit', type=int, default=500)
    repair.add_argument('--offset', type=int, default=0)
    repair.add_argument('--dry-run', action='store_true')
    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_config(args.settings)
    except SettingsError as e:
        logger.error(str(e))
        return 2

    pool = await init_db(settings['db_url'])
    try:
        return await dispatch(args, build_engine(settings, pool))
    finally:
        logger.info("Closing database connections...")
        await db_close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
