"""Inbound provider webhook endpoints."""

from calldispatch.webhooks.router import router

__all__ = ["router"]
