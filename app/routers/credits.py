from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query

from app.deps import get_current_account, get_gateway
from app.services.gateway import Gateway
from app.store.types import AccountRecord, TransactionKind, TransactionRecord

router = APIRouter()


def as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def transaction_out(tx: TransactionRecord) -> dict:
    return {
        "id": tx.id,
        "seq": tx.seq,
        "type": tx.kind.value,
        "amount": tx.amount,
        "resulting_balance": tx.resulting_balance,
        "reason": tx.reason.value,
        "description": tx.description,
        "metadata": tx.metadata,
        "created_at": tx.created_at.isoformat(),
    }


async def transactions_page(
    gateway: Gateway,
    account_id: str,
    type: Literal["ALL", "CREDIT", "DEBIT"],
    start_date: datetime | None,
    end_date: datetime | None,
    page: int,
    page_size: int,
    sort_order: Literal["asc", "desc"],
) -> dict:
    result = await gateway.ledger.list_transactions(
        account_id,
        kind=None if type == "ALL" else TransactionKind(type),
        start=as_utc(start_date),
        end=as_utc(end_date),
        page=page,
        page_size=page_size,
        descending=sort_order == "desc",
    )
    return {
        "transactions": [transaction_out(tx) for tx in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
    }


@router.get("/balance")
async def credits_balance(
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
):
    """Return current credit balance."""
    balance = await gateway.ledger.get_balance(account.id)
    return {"balance": balance}


@router.get("/transactions")
async def credits_transactions(
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
    type: Literal["ALL", "CREDIT", "DEBIT"] = Query("ALL"),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    sort_order: Literal["asc", "desc"] = Query("desc"),
):
    """Return the caller's ledger transactions, newest first unless sort_order=asc."""
    return await transactions_page(
        gateway, account.id, type, start_date, end_date, page, page_size, sort_order
    )
