from fastapi import APIRouter, Depends

from app.deps import get_current_account, get_gateway
from app.services.gateway import Gateway
from app.store.types import AccountRecord, EntitlementRecord

router = APIRouter()


def entitlement_out(ent: EntitlementRecord) -> dict:
    return {
        "operation": ent.operation,
        "status": ent.status.value,
        "limits": {name: {"used": c.used, "ceiling": c.ceiling} for name, c in ent.limits.items()},
        "subscribed_at": ent.subscribed_at.isoformat(),
        "last_used_at": ent.last_used_at.isoformat() if ent.last_used_at else None,
    }


@router.get("")
async def list_entitlements(
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
):
    entitlements = await gateway.entitlements.list_entitlements(account.id)
    return {"entitlements": [entitlement_out(e) for e in entitlements]}


@router.post("/{operation}")
async def subscribe(
    operation: str,
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
):
    """Subscribe to an operation, or reactivate it with fresh usage counters."""
    ent = await gateway.entitlements.subscribe(account.id, operation)
    return {"success": True, "entitlement": entitlement_out(ent)}


@router.delete("/{operation}")
async def unsubscribe(
    operation: str,
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
):
    ent = await gateway.entitlements.unsubscribe(account.id, operation)
    return {"success": True, "entitlement": entitlement_out(ent)}
