"""Account lifecycle: creation with a starting grant, soft-disable."""

from app.core.exceptions import BadRequestError, ConflictError, NotFoundError
from app.core.logging import get_logger
from app.services.ledger import LedgerStore
from app.store.base import DuplicateAccountError, MeteringStore
from app.store.types import AccountRecord, TransactionReason

log = get_logger(__name__)

ROLES = ("user", "admin")


class AccountService:
    def __init__(self, store: MeteringStore, ledger: LedgerStore, starting_grant: int = 100) -> None:
        self._store = store
        self._ledger = ledger
        self._starting_grant = starting_grant

    async def create(self, email: str, name: str = "", role: str = "user") -> AccountRecord:
        """Create the account and post its starting grant as the first ledger entry."""
        email = email.strip().lower()
        if not email or "@" not in email:
            raise BadRequestError("A valid email is required")
        if role not in ROLES:
            raise BadRequestError(f"Invalid role: {role}")
        try:
            account = await self._store.insert_account(email, name=name, role=role)
        except DuplicateAccountError as exc:
            raise ConflictError("Account already exists", details={"email": email}) from exc
        if self._starting_grant > 0:
            await self._ledger.credit(
                account.id,
                self._starting_grant,
                TransactionReason.BONUS,
                metadata={"source": "signup"},
                description="Starting grant",
                idempotency_key=f"signup:{account.id}",
            )
        log.info("account_created", account_id=account.id, role=role)
        return await self.get(account.id)

    async def get(self, account_id: str) -> AccountRecord:
        account = await self._store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    async def set_disabled(self, account_id: str, disabled: bool) -> AccountRecord:
        account = await self._store.set_account_disabled(account_id, disabled)
        if not account:
            raise NotFoundError("Account not found")
        log.info("account_disabled" if disabled else "account_enabled", account_id=account_id)
        return account
