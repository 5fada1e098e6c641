"""Command line interface for running the API server, indexer and reconciler together."""
import argparse
import asyncio
import logging
import signal

import uvicorn

from config import load_config
from database import init_db, close as db_close
from monitor import Engine, build_engine
from .main import app

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

should_exit = False


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global should_exit
    logger.info("Shutdown signal received. Cleaning up...")
    should_exit = True


async def startup(settings_path: str) -> Engine:
    """Initialize database and engine."""
    settings = load_config(settings_path)

    logger.info("Initializing database...")
    pool = await init_db(settings['db_url'])

    logger.info("Building indexing engine...")
    engine = build_engine(settings, pool)
    app.state.engine = engine
    return engine


class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server in a way that can be stopped."""
        await self.server.serve()

    async def stop(self):
        """Stop the server."""
        self.server.should_exit = True


async def main(settings_path: str, host: str, port: int):
    """Run the API server, event indexer, and reconciliation loop."""
    global should_exit

    engine = None
    server = None
    tasks = []
    try:
        # Register signal handlers in main thread
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        engine = await startup(settings_path)
        settings = engine.settings
        server = UvicornServer(host, port)

        tasks = [
            asyncio.create_task(server.run(), name="api"),
            asyncio.create_task(engine.indexer.start(settings['poll_interval']), name="indexer"),
            asyncio.create_task(
                engine.reconciler.start(settings['reconcile_interval'], settings['reconcile_batch_size']),
                name="reconciler"
            ),
        ]

        logger.info("All services started")

        # Wait for shutdown signal
        while not should_exit:
            await asyncio.sleep(1)

            # Check if any tasks failed
            for task in tasks:
                if task.done() and not task.cancelled():
                    exc = task.exception()
                    if exc:
                        logger.error(f"Task {task.get_name()} failed with error: {exc}")
                        should_exit = True
                        break

        logger.info("Starting cleanup...")

    finally:
        if engine:
            engine.indexer.stop()
            engine.reconciler.stop()

        if server:
            logger.info("Stopping API server...")
            await server.stop()

        for task in tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        logger.info("Closing database connections...")
        await db_close()

        logger.info("Cleanup complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the marketplace indexer API and workers")
    parser.add_argument('--settings', default='.', help="Directory holding settings.conf")
    parser.add_argument('--host', default='0.0.0.0')
    parser.add_argument('--port', type=int, default=8000)
    args = parser.parse_args()

    asyncio.run(main(args.settings, args.host, args.port))
