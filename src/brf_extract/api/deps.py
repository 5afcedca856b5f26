"""
Shared dependencies for the API routers.
"""
from __future__ import annotations

from typing import Optional

from brf_extract.services.gateway import DispatchGateway, build_gateway

_gateway: Optional[DispatchGateway] = None


def get_gateway() -> DispatchGateway:
    """Process-wide gateway, built from settings on first use."""
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway
