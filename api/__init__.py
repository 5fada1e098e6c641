"""REST API module for the marketplace indexer.

This module provides HTTP endpoints for:
- Webhook delivery of mined transactions
- Operator reindexing, reconciliation and reporting
- Seaport order registration
- JSON-RPC passthrough to the node
- System health
"""

from .main import app

__all__ = ['app']
