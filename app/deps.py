"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_account_id
from app.core.security import load_access_token
from app.services import rate_limit
from app.services.gateway import Gateway
from app.store.types import AccountRecord

API_KEY_HEADER = "X-API-Key"


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def _token_from_request(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return request.headers.get(API_KEY_HEADER)


async def resolve_account(gateway: Gateway, token: str | None) -> AccountRecord:
    """Load the account a token was issued for; shared by HTTP and websocket auth."""
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = load_access_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    account_id = payload.get("account_id")
    if not account_id:
        raise UnauthorizedError("Invalid token")
    account = await gateway.store.get_account(account_id)
    if not account:
        raise UnauthorizedError("Account not found")
    if account.disabled:
        raise ForbiddenError("Account is disabled")
    return account


async def get_current_account(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> AccountRecord:
    """Dependency: resolve the bearer token (or X-API-Key) to an enabled account."""
    account = await resolve_account(gateway, _token_from_request(request))
    bind_account_id(account.id)
    return account


async def require_admin(account: AccountRecord = Depends(get_current_account)) -> AccountRecord:
    """Dependency: require current account to have role admin."""
    if account.role != "admin":
        raise ForbiddenError("Admin only")
    return account


async def enforce_rate_limit(
    account: AccountRecord = Depends(get_current_account),
    gateway: Gateway = Depends(get_gateway),
) -> AccountRecord:
    s = gateway.settings
    await rate_limit.enforce(gateway.redis, account.id, s.rate_limit_requests, s.rate_limit_window_seconds)
    return account
