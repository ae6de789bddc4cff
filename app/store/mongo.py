"""MongoDB store. Ledger units run in multi-document transactions (replica set required)."""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from beanie import PydanticObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
    PyMongoError,
    WTimeoutError,
)

from app.db.init import init_db
from app.models.account import Account
from app.models.audit_log import AuditLog
from app.models.entitlement import Entitlement
from app.models.transaction import LedgerTransaction
from app.models.usage_log import UsageLogEntry
from app.store.base import (
    AccountNotFoundError,
    BalanceTooLowError,
    DuplicateAccountError,
    MeteringStore,
    StoreError,
    TransientStoreError,
)
from app.store.types import (
    AccountRecord,
    AuditRecord,
    ConsumeOutcome,
    EntitlementRecord,
    EntitlementStatus,
    LedgerEntry,
    TransactionKind,
    TransactionQuery,
    TransactionRecord,
    UsageRecord,
    utcnow,
)

WRITE_CONFLICT = 112


def _oid(value: str) -> PydanticObjectId | None:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        return None


def _translate(exc: PyMongoError) -> StoreError:
    transient = (
        isinstance(exc, (ConnectionFailure, ExecutionTimeout, WTimeoutError))
        or exc.has_error_label("TransientTransactionError")
        or exc.has_error_label("UnknownTransactionCommitResult")
        or (isinstance(exc, OperationFailure) and exc.code == WRITE_CONFLICT)
    )
    return TransientStoreError(str(exc)) if transient else StoreError(str(exc))


@contextmanager
def _translated() -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        raise _translate(exc) from exc


def _account(raw: dict[str, Any]) -> AccountRecord:
    return AccountRecord(
        id=str(raw["_id"]),
        email=raw["email"],
        name=raw.get("name", ""),
        role=raw.get("role", "user"),
        balance=raw.get("balance", 0),
        ledger_seq=raw.get("ledger_seq", 0),
        disabled=raw.get("disabled", False),
        created_at=raw.get("created_at") or utcnow(),
        updated_at=raw.get("updated_at") or utcnow(),
    )


def _transaction(doc: LedgerTransaction) -> TransactionRecord:
    data = doc.model_dump(exclude={"id", "revision_id", "account_id"})
    return TransactionRecord(id=str(doc.id), account_id=str(doc.account_id), **data)


def _entitlement(raw: dict[str, Any]) -> EntitlementRecord:
    return EntitlementRecord(
        id=str(raw["_id"]),
        account_id=str(raw["account_id"]),
        operation=raw["operation"],
        status=raw.get("status", EntitlementStatus.ACTIVE),
        limits=raw.get("limits") or {},
        subscribed_at=raw.get("subscribed_at") or utcnow(),
        last_used_at=raw.get("last_used_at"),
        updated_at=raw.get("updated_at") or utcnow(),
    )


def _usage(doc: UsageLogEntry) -> UsageRecord:
    data = doc.model_dump(exclude={"id", "revision_id", "account_id"})
    return UsageRecord(account_id=str(doc.account_id), **data)


class MongoMeteringStore(MeteringStore):
    def __init__(self, uri: str | None = None, db_name: str | None = None) -> None:
        self._uri = uri
        self._db_name = db_name
        self._client: AsyncIOMotorClient | None = None

    async def init(self) -> None:
        self._client = await init_db(self._uri, self._db_name)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    @property
    def client(self) -> AsyncIOMotorClient:
        if self._client is None:
            raise StoreError("Mongo store used before init()")
        return self._client

    # Accounts

    async def insert_account(self, email: str, name: str = "", role: str = "user") -> AccountRecord:
        account = Account(email=email, name=name, role=role)
        try:
            await account.insert()
        except DuplicateKeyError as exc:
            raise DuplicateAccountError(email) from exc
        except PyMongoError as exc:
            raise _translate(exc) from exc
        return _account(account.model_dump(by_alias=True))

    async def get_account(self, account_id: str) -> AccountRecord | None:
        oid = _oid(account_id)
        if oid is None:
            return None
        with _translated():
            raw = await Account.get_motor_collection().find_one({"_id": oid})
        return _account(raw) if raw else None

    async def set_account_disabled(self, account_id: str, disabled: bool) -> AccountRecord | None:
        oid = _oid(account_id)
        if oid is None:
            return None
        with _translated():
            raw = await Account.get_motor_collection().find_one_and_update(
                {"_id": oid},
                {"$set": {"disabled": disabled, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        return _account(raw) if raw else None

    # Ledger

    async def apply_entry(self, entry: LedgerEntry, usage: UsageRecord | None = None) -> TransactionRecord:
        oid = _oid(entry.account_id)
        if oid is None:
            raise AccountNotFoundError(entry.account_id)
        if entry.idempotency_key:
            existing = await self.find_transaction(entry.account_id, entry.idempotency_key)
            if existing:
                return existing
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    return await self._apply_in_session(oid, entry, usage, session)
        except DuplicateKeyError as exc:
            # an earlier attempt with the same key committed after all
            if entry.idempotency_key:
                existing = await self.find_transaction(entry.account_id, entry.idempotency_key)
                if existing:
                    return existing
            raise TransientStoreError(str(exc)) from exc
        except PyMongoError as exc:
            raise _translate(exc) from exc

    async def _apply_in_session(
        self,
        oid: PydanticObjectId,
        entry: LedgerEntry,
        usage: UsageRecord | None,
        session: Any,
    ) -> TransactionRecord:
        accounts = Account.get_motor_collection()
        query: dict[str, Any] = {"_id": oid}
        if entry.kind == TransactionKind.DEBIT:
            query["balance"] = {"$gte": entry.amount}
        now = utcnow()
        raw = await accounts.find_one_and_update(
            query,
            {"$inc": {"balance": entry.delta, "ledger_seq": 1}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if raw is None:
            current = await accounts.find_one({"_id": oid}, {"balance": 1}, session=session)
            if current is None:
                raise AccountNotFoundError(entry.account_id)
            raise BalanceTooLowError(entry.amount, current.get("balance", 0))
        tx = LedgerTransaction(
            account_id=oid,
            seq=raw["ledger_seq"],
            kind=entry.kind,
            amount=entry.amount,
            resulting_balance=raw["balance"],
            reason=entry.reason,
            description=entry.description,
            metadata=dict(entry.metadata),
            idempotency_key=entry.idempotency_key,
            created_at=now,
        )
        await tx.insert(session=session)
        if usage is not None:
            await UsageLogEntry(
                account_id=oid, **usage.model_dump(exclude={"account_id"})
            ).insert(session=session)
        return _transaction(tx)

    async def find_transaction(self, account_id: str, idempotency_key: str) -> TransactionRecord | None:
        oid = _oid(account_id)
        if oid is None:
            return None
        with _translated():
            doc = await LedgerTransaction.find_one(
                {"account_id": oid, "idempotency_key": idempotency_key}
            )
        return _transaction(doc) if doc else None

    async def list_transactions(
        self, account_id: str, query: TransactionQuery
    ) -> tuple[list[TransactionRecord], int]:
        oid = _oid(account_id)
        if oid is None:
            return [], 0
        criteria: dict[str, Any] = {"account_id": oid}
        if query.kind is not None:
            criteria["kind"] = query.kind.value
        if query.start or query.end:
            window: dict[str, datetime] = {}
            if query.start:
                window["$gte"] = query.start
            if query.end:
                window["$lte"] = query.end
            criteria["created_at"] = window
        direction = DESCENDING if query.descending else ASCENDING
        with _translated():
            total = await LedgerTransaction.find(criteria).count()
            docs = (
                await LedgerTransaction.find(criteria)
                .sort([("created_at", direction), ("seq", direction)])
                .skip(query.offset)
                .limit(query.limit)
                .to_list()
            )
        return [_transaction(d) for d in docs], total

    # Usage log

    async def append_usage(self, usage: UsageRecord) -> None:
        oid = _oid(usage.account_id)
        if oid is None:
            raise AccountNotFoundError(usage.account_id)
        with _translated():
            await UsageLogEntry(account_id=oid, **usage.model_dump(exclude={"account_id"})).insert()

    async def list_usage(
        self,
        account_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        operation: str | None = None,
    ) -> list[UsageRecord]:
        oid = _oid(account_id)
        if oid is None:
            return []
        criteria: dict[str, Any] = {"account_id": oid}
        if operation:
            criteria["operation"] = operation
        if since or until:
            window: dict[str, datetime] = {}
            if since:
                window["$gte"] = since
            if until:
                window["$lte"] = until
            criteria["created_at"] = window
        with _translated():
            docs = await UsageLogEntry.find(criteria).sort("+created_at").to_list()
        return [_usage(d) for d in docs]

    # Entitlements

    async def get_entitlement(self, account_id: str, operation: str) -> EntitlementRecord | None:
        oid = _oid(account_id)
        if oid is None:
            return None
        with _translated():
            raw = await Entitlement.get_motor_collection().find_one(
                {"account_id": oid, "operation": operation}
            )
        return _entitlement(raw) if raw else None

    async def list_entitlements(self, account_id: str) -> list[EntitlementRecord]:
        oid = _oid(account_id)
        if oid is None:
            return []
        with _translated():
            cursor = Entitlement.get_motor_collection().find({"account_id": oid}).sort("operation", ASCENDING)
            rows = await cursor.to_list(length=None)
        return [_entitlement(r) for r in rows]

    async def save_entitlement(
        self,
        account_id: str,
        operation: str,
        status: EntitlementStatus,
        ceilings: dict[str, int | None] | None = None,
    ) -> EntitlementRecord:
        oid = _oid(account_id)
        if oid is None:
            raise AccountNotFoundError(account_id)
        coll = Entitlement.get_motor_collection()
        now = utcnow()
        with _translated():
            current = await coll.find_one({"account_id": oid, "operation": operation}, {"status": 1})
            fields: dict[str, Any] = {"status": status.value, "updated_at": now}
            on_insert: dict[str, Any] = {"account_id": oid, "operation": operation}
            if current is None:
                on_insert["subscribed_at"] = now
            elif status == EntitlementStatus.ACTIVE and current.get("status") != EntitlementStatus.ACTIVE.value:
                fields["subscribed_at"] = now
            if ceilings is not None:
                fields["limits"] = {name: {"used": 0, "ceiling": c} for name, c in ceilings.items()}
            elif current is None:
                on_insert["limits"] = {}
            raw = await coll.find_one_and_update(
                {"account_id": oid, "operation": operation},
                {"$set": fields, "$setOnInsert": on_insert},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return _entitlement(raw)

    async def consume_entitlement(
        self, account_id: str, operation: str, limit: str, now: datetime
    ) -> tuple[ConsumeOutcome, EntitlementRecord | None]:
        oid = _oid(account_id)
        if oid is None:
            return ConsumeOutcome.NOT_ENTITLED, None
        coll = Entitlement.get_motor_collection()
        used = f"limits.{limit}.used"
        with _translated():
            raw = await coll.find_one_and_update(
                {
                    "account_id": oid,
                    "operation": operation,
                    "status": EntitlementStatus.ACTIVE.value,
                    "$or": [
                        {f"limits.{limit}.ceiling": None},
                        {"$expr": {"$lt": [{"$ifNull": [f"${used}", 0]}, f"$limits.{limit}.ceiling"]}},
                    ],
                },
                {"$inc": {used: 1}, "$set": {"last_used_at": now, "updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if raw is not None:
                return ConsumeOutcome.ADMITTED, _entitlement(raw)
            raw = await coll.find_one({"account_id": oid, "operation": operation})
        if raw is None or raw.get("status") != EntitlementStatus.ACTIVE.value:
            return ConsumeOutcome.NOT_ENTITLED, _entitlement(raw) if raw else None
        return ConsumeOutcome.LIMIT_EXCEEDED, _entitlement(raw)

    async def reset_usage(self, account_id: str, operation: str) -> EntitlementRecord | None:
        oid = _oid(account_id)
        if oid is None:
            return None
        coll = Entitlement.get_motor_collection()
        with _translated():
            raw = await coll.find_one({"account_id": oid, "operation": operation})
            if raw is None:
                return None
            reset = {f"limits.{name}.used": 0 for name in (raw.get("limits") or {})}
            reset["updated_at"] = utcnow()
            raw = await coll.find_one_and_update(
                {"_id": raw["_id"]},
                {"$set": reset},
                return_document=ReturnDocument.AFTER,
            )
        return _entitlement(raw) if raw else None

    # Audit

    async def append_audit(self, record: AuditRecord) -> None:
        with _translated():
            await AuditLog(**record.model_dump()).insert()
