"""Operator endpoints: reindexing, reconciliation and reporting.

Thin wrappers around EventIndexer and ReconciliationService. Every route
requires the ``X-Admin-Token`` header when ``admin_token`` is configured.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from api.deps import get_engine, require_admin
from monitor import Engine
from reconcile import ReconciliationError
from rpc import InvalidRangeError, RPCError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin)]
)


class IndexEventsRequest(BaseModel):
    """Block range to replay. Omit both bounds to run the next cursor pass."""
    from_block: Optional[int] = Field(None, alias='fromBlock')
    to_block: Optional[int] = Field(None, alias='toBlock')


class ReindexRequest(BaseModel):
    """Block the cursor restarts from."""
    from_block: int = Field(..., alias='fromBlock')


class ReconcileRequest(BaseModel):
    limit: Optional[int] = None
    expire: bool = False
    dry_run: bool = Field(False, alias='dryRun')


class RepairRequest(BaseModel):
    limit: int = 500
    offset: int = 0
    dry_run: bool = Field(False, alias='dryRun')


@router.post("/index-events")
async def index_events(request: IndexEventsRequest, engine: Engine = Depends(get_engine)):
    """Index the next range after the cursor, or replay an explicit range."""
    if request.from_block is None and request.to_block is None:
        result = await engine.indexer.run_once()
        return result.to_dict()

    if request.from_block is None or request.to_block is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="fromBlock and toBlock must be given together"
        )
    try:
        result = await engine.indexer.index_range(request.from_block, request.to_block)
    except InvalidRangeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return result.to_dict()


@router.get("/index-status")
async def index_status(engine: Engine = Depends(get_engine)):
    """Cursor position against chain head."""
    indexer = engine.indexer
    cursor = await engine.cursor_store.get(indexer.stream_id)
    try:
        head = await asyncio.to_thread(engine.rpc.get_block_number)
    except RPCError as e:
        logger.warning(f"Head unavailable for index status: {e}")
        head = None

    effective = cursor if cursor is not None else indexer.start_block - 1
    return {
        "stream_id": indexer.stream_id,
        "cursor": cursor,
        "start_block": indexer.start_block,
        "head": head,
        "confirmations": indexer.confirmations,
        "blocks_behind": None if head is None else max(0, head - indexer.confirmations - effective),
    }


@router.post("/reindex")
async def reindex(request: ReindexRequest, engine: Engine = Depends(get_engine)):
    """Reset the cursor to ``fromBlock - 1`` and run one pass."""
    try:
        result = await engine.indexer.reindex_from(request.from_block)
    except InvalidRangeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return result.to_dict()


@router.post("/reconcile")
async def reconcile(request: ReconcileRequest, engine: Engine = Depends(get_engine)):
    limit = request.limit or engine.settings['reconcile_batch_size']
    try:
        result = await engine.reconciler.sweep(limit, expire=request.expire, dry_run=request.dry_run)
    except ReconciliationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
    return result.to_dict()


@router.get("/drift-report")
async def drift_report(
    limit: int = Query(100, ge=1, le=1000),
    engine: Engine = Depends(get_engine)
):
    """Drift between the projection and contract state, without correcting it."""
    try:
        result = await engine.reconciler.drift_report(limit)
    except ReconciliationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
    return result.to_dict()


@router.post("/repair-order-hashes")
async def repair_order_hashes(request: RepairRequest, engine: Engine = Depends(get_engine)):
    try:
        result = await engine.reconciler.repair_order_hashes(
            request.limit, offset=request.offset, dry_run=request.dry_run
        )
    except ReconciliationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
    return result.to_dict()


@router.get("/stats")
async def stats(engine: Engine = Depends(get_engine)):
    async with engine.store.connection() as conn:
        return await engine.store.get_stats(conn)


@router.get("/anomalies")
async def anomalies(
    kind: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    engine: Engine = Depends(get_engine)
):
    """Unresolved anomalies, newest first."""
    async with engine.store.connection() as conn:
        return await engine.store.list_anomalies(conn, kind=kind, limit=limit)
