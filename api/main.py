import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import load_config
from database import init_db, close as db_close
from monitor import build_engine

from .admin import router as admin_router
from .orders import router as orders_router
from .rpc import router as rpc_router
from .system import router as system_router
from .webhooks import router as webhooks_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on startup unless one was already attached."""
    owns_pool = False
    if getattr(app.state, 'engine', None) is None:
        logger.info("Initializing API...")
        settings = load_config()
        pool = await init_db(settings['db_url'])
        app.state.engine = build_engine(settings, pool)
        owns_pool = True

    yield

    if owns_pool:
        logger.info("Shutting down API...")
        app.state.engine = None
        await db_close()


app = FastAPI(
    title="Marketplace Indexer API",
    description="Event indexing, reconciliation and order registration for the marketplace",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add routes
app.include_router(admin_router)
app.include_router(orders_router)
app.include_router(rpc_router)
app.include_router(system_router)
app.include_router(webhooks_router)


@app.get("/")
async def root():
    return {
        "name": "Marketplace Indexer API",
        "version": "1.0.0",
        "status": "running"
    }
