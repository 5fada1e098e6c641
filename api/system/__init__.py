"""System health endpoints."""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from asyncpg.exceptions import PostgresError

from api.deps import get_engine
from monitor import Engine
from rpc import RPCError

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/system",
    tags=["System"]
)


class SystemHealth(BaseModel):
    """Model for system health data."""
    status: str
    database_status: str
    blockchain_status: str
    chain_id: Optional[int] = None
    head: Optional[int] = None
    cursor: Optional[int] = None


@router.get("/health", response_model=SystemHealth)
async def health(engine: Engine = Depends(get_engine)):
    """Database and node reachability, plus the indexer cursor."""
    cursor = None
    try:
        cursor = await engine.cursor_store.get(engine.indexer.stream_id)
        database_status = "ok"
    except (PostgresError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        database_status = "unavailable"

    chain_id = head = None
    try:
        chain_id = await asyncio.to_thread(engine.rpc.get_chain_id)
        head = await asyncio.to_thread(engine.rpc.get_block_number)
        blockchain_status = "ok" if chain_id == engine.settings['chain_id'] else "wrong_chain"
    except RPCError as e:
        logger.warning(f"Node health check failed: {e}")
        blockchain_status = "unavailable"

    healthy = database_status == "ok" and blockchain_status == "ok"
    return SystemHealth(
        status="healthy" if healthy else "degraded",
        database_status=database_status,
        blockchain_status=blockchain_status,
        chain_id=chain_id,
        head=head,
        cursor=cursor,
    )
