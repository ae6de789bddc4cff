from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.core.security import create_access_token
from app.deps import get_gateway, require_admin
from app.routers.credits import transaction_out, transactions_page
from app.routers.entitlements import entitlement_out
from app.services.gateway import Gateway
from app.store.types import AccountRecord, TransactionReason

router = APIRouter()


class CreateAccountRequest(BaseModel):
    email: str
    name: str = ""
    role: Literal["user", "admin"] = "user"


class GrantCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
    reason: Literal["PURCHASE", "BONUS", "REFUND"] = "PURCHASE"
    description: str = ""
    reference_id: str | None = None


def account_out(account: AccountRecord) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "balance": account.balance,
        "disabled": account.disabled,
        "created_at": account.created_at.isoformat(),
    }


@router.post("/accounts")
async def admin_create_account(
    body: CreateAccountRequest,
    admin: AccountRecord = Depends(require_admin),
    gateway: Gateway = Depends(get_gateway),
):
    """Admin: create an account with its starting grant; returns its access token."""
    account = await gateway.accounts.create(body.email, name=body.name, role=body.role)
    await log_event(gateway.store, admin.id, "account_created", "account", account.id, {"role": body.role})
    return {"account": account_out(account), "access_token": create_access_token(account.id)}


@router.get("/accounts/{account_id}")
async def admin_get_account(
    account_id: str,
    admin: AccountRecord = Depends(require_admin),
    gateway: Gateway = Depends(get_gateway),
):
    account = await gateway.accounts.get(account_id)
    return account_out(account)


@router.post("/accounts/{account_id}/credits")
async def admin_grant_credits(
    account_id: str,
    body: GrantCreditsRequest,
    admin: AccountRecord = Depends(require_admin),
    gateway: Gateway = Depends(get_gateway),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Admin: add credits (purchase settled elsewhere, bonus or refund). Idempotent per Idempotency-Key."""
    metadata = {"granted_by": admin.id}
    if body.reference_id:
        metadata["reference_id"] = body.reference_id
    tx = await gateway.ledger.post_credit(
        account_id,
        body.amount,
        TransactionReason(body.reason),
        metadata=metadata,
        description=body.description,
        idempotency_key=idempotency_key,
    )
    gateway.hub.balance_update(account_id, tx.resulting_balance, sequence=tx.seq)
    await log_event(
        gateway.store,
        admin.id,
        "credits_granted",
        "account",
        account_id,
        {"amount": body.amount, "reason": body.reason, "transaction_id": tx.id},
    )
    balance = await gateway.ledger.get_balance(account_id)
    return {"transaction": transaction_out(tx), "balance": balance}


@router.post("/accounts/{account_id}/disable")
async def admin_disable_account(
    account_id: str,
    admin: AccountRecord = Depends(require_admin),
    gateway: Gateway = Depends(get_gateway),
):
    account = await gateway.accounts.set_disabled(account_id, True)
    await log_event(gateway.store, admin.id, "account_disabled", "account", account_id)
    return account_out(account)


@router.post("/accounts/{account_id}/enable")
async def admin_enable_account(
    account_id: str,
    admin: AccountRecord = Depends(require_admin),
    gateway: Gateway = Depends(get_gateway),
):
    account = await gateway.accounts.set_disabled(account_id, False)
    await log_event(gateway.store, admin.id, "account_enabled", "account", account_id)
    return account_out(account)


@router.post("/accounts/{account_id}/entitlements/{operation}/reset")
async def admin_reset_usage(
    account_id: str,
    operation: str,
    admin: AccountRecord = Depends(require_admin),
    gateway: Gateway = Depends(get_gateway),
):
    """Admin: restart usage counters, e.g. on plan renewal."""
    ent = await gateway.entitlements.reset_usage(account_id, operation)
    await log_event(gateway.store, admin.id, "entitlement_usage_reset", "entitlement", ent.id, {"operation": operation})
    return entitlement_out(ent)


@router.get("/accounts/{account_id}/transactions")
async def admin_account_transactions(
    account_id: str,
    admin: AccountRecord = Depends(require_admin),
    gateway: Gateway = Depends(get_gateway),
    type: Literal["ALL", "CREDIT", "DEBIT"] = Query("ALL"),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    sort_order: Literal["asc", "desc"] = Query("desc"),
):
    await gateway.accounts.get(account_id)
    return await transactions_page(
        gateway, account_id, type, start_date, end_date, page, page_size, sort_order
    )
