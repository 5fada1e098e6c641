"""Shared request dependencies."""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from monitor import Engine


def get_engine(request: Request) -> Engine:
    """The engine built at startup"""
    engine = getattr(request.app.state, 'engine', None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine not initialized"
        )
    return engine


def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)) -> None:
    """Check the shared admin token when one is configured."""
    expected = get_engine(request).settings.get('admin_token')
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
