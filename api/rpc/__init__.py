"""JSON-RPC passthrough to the configured node."""
import asyncio
import logging
from typing import Any, Dict, List, Union

from fastapi import APIRouter, Body, Depends, HTTPException, status

from api.deps import get_engine
from monitor import Engine
from rpc import RPCError

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["RPC"]
)


@router.post("/rpc")
async def rpc_passthrough(
    payload: Union[Dict[str, Any], List[Dict[str, Any]]] = Body(...),
    engine: Engine = Depends(get_engine)
):
    """Forward a JSON-RPC request or batch and return the node's reply verbatim."""
    if isinstance(payload, list) and not payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Empty batch"
        )
    try:
        return await asyncio.to_thread(engine.rpc.passthrough, payload)
    except RPCError as e:
        logger.error(f"Passthrough failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )
