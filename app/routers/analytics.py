from fastapi import APIRouter, Depends, Query

from app.deps import get_current_account, get_gateway
from app.services.gateway import Gateway
from app.store.types import AccountRecord

router = APIRouter()


@router.get("")
async def usage_summary(
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
    time_range: str = Query("7d"),
):
    """Usage over the last 24h, 7d, 30d or 90d."""
    return await gateway.usage.summary(account.id, time_range)


@router.get("/{operation}")
async def operation_stats(
    operation: str,
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
):
    return await gateway.usage.operation_stats(account.id, operation)
