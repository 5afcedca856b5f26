"""Tenant balance and usage endpoints (read-only)."""
import logging

from fastapi import APIRouter, Depends, HTTPException

from brf_extract.api.deps import get_gateway
from brf_extract.services.gateway import DispatchGateway

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{tenant_id}/balance")
async def get_balance(tenant_id: str, gateway: DispatchGateway = Depends(get_gateway)):
    account = await gateway.ledger.account(tenant_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    return {
        "tenant_id": account.tenant_id,
        "balance": account.balance,
        "extraction_enabled": account.extraction_enabled,
    }


@router.get("/{tenant_id}/usage")
async def get_usage(tenant_id: str, gateway: DispatchGateway = Depends(get_gateway)):
    """Usage-log entries for a tenant (in-memory ledger only)."""
    entries_for = getattr(gateway.ledger, "entries_for", None)
    if entries_for is None:
        raise HTTPException(status_code=501, detail="Ledger does not expose a usage log")
    entries = entries_for(tenant_id)
    return {
        "tenant_id": tenant_id,
        "calls": len(entries),
        "total_cost": sum(e.cost for e in entries),
        "entries": [e.model_dump(mode="json") for e in entries],
    }
