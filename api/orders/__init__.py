"""Order submission endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from api.deps import get_engine
from monitor import Engine
from orders import OrderParametersError, get_order_hash
from projector import ApplyStatus, ProjectionError
from rpc import NotFoundError, RPCError

# Create router
router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


class RegisterOrderRequest(BaseModel):
    """Signed Seaport order submitted by a client."""
    parameters: Dict[str, Any]
    signature: Optional[str] = None
    tx_hash: Optional[str] = Field(None, alias='txHash')


class OrderHashRequest(BaseModel):
    parameters: Dict[str, Any]


class SubmitTransactionRequest(BaseModel):
    """Hash of a marketplace transaction the client just sent."""
    tx_hash: str = Field(..., alias='txHash', pattern=r'^0x[0-9a-fA-F]{64}$')


@router.post("/hash")
async def order_hash(request: OrderHashRequest):
    """Compute the order hash of OrderComponents without storing anything."""
    try:
        return {"order_hash": get_order_hash(request.parameters)}
    except OrderParametersError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.post("")
async def register_order(request: RegisterOrderRequest, engine: Engine = Depends(get_engine)):
    """Pre-insert a Seaport listing or offer under its computed order hash."""
    try:
        result = await engine.projector.register_order(request.parameters, tx_hash=request.tx_hash)
    except OrderParametersError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except ProjectionError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

    return {
        "order_hash": result.natural_key,
        "created": result.status == ApplyStatus.APPLIED,
    }


@router.post("/transactions")
async def submit_transaction(request: SubmitTransactionRequest, engine: Engine = Depends(get_engine)):
    """Apply a sent transaction's logs as soon as its receipt is visible.

    Polling would pick the transaction up later anyway; this makes the
    result visible to the client that sent it without waiting for the next run.
    """
    try:
        result = await engine.webhook.ingest_transaction(request.tx_hash)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except RPCError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )

    if result.errors:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="; ".join(result.errors)
        )
    return result.to_dict()
