"""
MongoDB Store - document backend over pymongo's asyncio client.

Collections: users, mint_requests, quotas, mint_failures, system_config.
Ids are stored as strings and days as ISO dates. Claims use a single
find_one_and_update so concurrent workers never receive the same document.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID

from pymongo import ASCENDING, AsyncMongoClient, ReturnDocument
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError
from structlog import get_logger

from faucet.exceptions import InvalidTransitionError, StorageUnavailableError
from faucet.models.domain import (
    DailyReportRow,
    MintFailure,
    MintOutcome,
    MintRequest,
    Quota,
    SystemConfigEntry,
    User,
    normalize_handle,
    utc_now,
)
from faucet.models.enums import Channel, MintStatus, Role
from faucet.observability.metrics import metrics
from faucet.storage.interfaces import FaucetStore
from faucet.storage.memory import day_bounds

logger = get_logger(__name__)

_CONNECTIVITY_ERRORS = (ConnectionFailure, OSError)


def _user_from_doc(doc: dict[str, Any]) -> User:
    return User(
        id=UUID(doc["_id"]),
        channel=Channel.parse(doc["channel"]),
        handle=doc["handle"],
        role=Role.parse(doc["role"]),
        domain=doc.get("domain"),
        last_seen_at=doc["last_seen_at"],
    )


def _request_from_doc(doc: dict[str, Any]) -> MintRequest:
    return MintRequest(
        id=UUID(doc["_id"]),
        user_id=UUID(doc["user_id"]),
        channel=Channel.parse(doc["channel"]),
        amount=doc["amount"],
        status=MintStatus.parse(doc["status"]),
        requested_at=doc["requested_at"],
        tx_reference=doc.get("tx_reference"),
        error=doc.get("error"),
        processed_at=doc.get("processed_at"),
        attempt=doc.get("attempt", 0),
    )


def _config_from_doc(doc: dict[str, Any]) -> SystemConfigEntry:
    return SystemConfigEntry(
        key=doc["_id"],
        value=doc["value"],
        description=doc.get("description"),
        created_at=doc["created_at"],
        updated_at=doc["updated_at"],
    )


class MongoStore(FaucetStore):
    """All capabilities backed by MongoDB."""

    backend_name = "mongodb"

    def __init__(
        self,
        client: AsyncMongoClient,
        database: str,
        visibility_timeout: timedelta = timedelta(minutes=5),
    ) -> None:
        self.client = client
        self.db: AsyncDatabase = client[database]
        self.visibility_timeout = visibility_timeout
        self.users = self.db["users"]
        self.requests = self.db["mint_requests"]
        self.quotas = self.db["quotas"]
        self.failures = self.db["mint_failures"]
        self.configs = self.db["system_config"]

    @classmethod
    async def connect(
        cls, url: str, database: str, visibility_timeout: timedelta, timeout_ms: int = 5000
    ) -> "MongoStore":
        """Connect, verify the server answers and make sure indexes exist."""
        client: AsyncMongoClient = AsyncMongoClient(
            url, tz_aware=True, serverSelectionTimeoutMS=timeout_ms
        )
        store = cls(client, database, visibility_timeout)
        async with store._guard("connect"):
            await client.admin.command("ping")
        await store.ensure_indexes()
        return store

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Translate driver connectivity errors."""
        try:
            yield
        except _CONNECTIVITY_ERRORS as e:
            metrics.record_storage_error(self.backend_name, operation)
            logger.error(
                "storage_unavailable",
                backend=self.backend_name,
                operation=operation,
                error=str(e),
            )
            raise StorageUnavailableError(self.backend_name, operation, str(e)) from e

    async def ensure_indexes(self) -> None:
        async with self._guard("ensure_indexes"):
            await self.users.create_index(
                [("channel", ASCENDING), ("handle", ASCENDING)], unique=True
            )
            await self.requests.create_index(
                [("status", ASCENDING), ("requested_at", ASCENDING)]
            )
            await self.requests.create_index([("requested_at", ASCENDING)])
            await self.quotas.create_index(
                [("user_id", ASCENDING), ("day", ASCENDING)], unique=True
            )
            await self.failures.create_index([("request_id", ASCENDING)])

    async def close(self) -> None:
        await self.client.close()

    # ========================================================================
    # Identity
    # ========================================================================

    async def upsert_user(self, user: User) -> User:
        query = {"channel": user.channel.value, "handle": normalize_handle(user.handle)}
        fields = {
            "role": user.role.value,
            "domain": user.domain,
            "last_seen_at": user.last_seen_at,
        }
        async with self._guard("upsert_user"):
            try:
                doc = await self.users.find_one_and_update(
                    query,
                    {"$set": fields, "$setOnInsert": {"_id": str(user.id)}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # Lost an insert race on (channel, handle); the winner's row now exists
                doc = await self.users.find_one_and_update(
                    query, {"$set": fields}, return_document=ReturnDocument.AFTER
                )
        return _user_from_doc(doc)

    async def find_user(self, channel: str, handle: str) -> User | None:
        async with self._guard("find_user"):
            doc = await self.users.find_one(
                {"channel": channel.strip().lower(), "handle": normalize_handle(handle)}
            )
        return _user_from_doc(doc) if doc else None

    async def set_role(self, user_id: UUID, role: Role) -> None:
        async with self._guard("set_role"):
            result = await self.users.update_one(
                {"_id": str(user_id)}, {"$set": {"role": role.value}}
            )
        if result.matched_count == 0:
            logger.warning("set_role_user_missing", backend=self.backend_name, user_id=str(user_id))

    # ========================================================================
    # Mint ledger
    # ========================================================================

    async def enqueue(self, request: MintRequest) -> None:
        async with self._guard("enqueue"):
            await self.requests.update_one(
                {"_id": str(request.id)},
                {
                    "$setOnInsert": {
                        "user_id": str(request.user_id),
                        "channel": request.channel.value,
                        "amount": request.amount,
                        "status": request.status.value,
                        "tx_reference": request.tx_reference,
                        "error": request.error,
                        "requested_at": request.requested_at,
                        "processed_at": request.processed_at,
                        "attempt": request.attempt,
                    }
                },
                upsert=True,
            )

    async def insert_processing(self, request: MintRequest) -> None:
        if request.status != MintStatus.PROCESSING or request.processed_at is not None:
            raise ValueError("insert_processing takes a held request without processed_at")
        async with self._guard("insert_processing"):
            result = await self.requests.update_one(
                {"_id": str(request.id)},
                {
                    "$setOnInsert": {
                        "user_id": str(request.user_id),
                        "channel": request.channel.value,
                        "amount": request.amount,
                        "status": request.status.value,
                        "tx_reference": None,
                        "error": None,
                        "requested_at": request.requested_at,
                        "processed_at": None,
                        "attempt": request.attempt,
                    }
                },
                upsert=True,
            )
            if result.upserted_id is None:
                raise InvalidTransitionError(
                    request.id, await self._current_status(request.id), MintStatus.PROCESSING
                )

    async def claim_next_pending(self) -> MintRequest | None:
        now = utc_now()
        cutoff = now - self.visibility_timeout
        async with self._guard("claim_next_pending"):
            doc = await self.requests.find_one_and_update(
                {
                    "$or": [
                        {"status": MintStatus.PENDING.value},
                        {
                            "status": MintStatus.PROCESSING.value,
                            "processed_at": {"$ne": None, "$lt": cutoff},
                        },
                    ]
                },
                {
                    "$set": {"status": MintStatus.PROCESSING.value, "processed_at": now},
                    "$inc": {"attempt": 1},
                },
                sort=[("requested_at", ASCENDING)],
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            return None

        claimed = _request_from_doc(doc)
        if claimed.attempt > 1:
            logger.warning(
                "mint_request_reclaimed",
                backend=self.backend_name,
                request_id=str(claimed.id),
                attempt=claimed.attempt,
            )
        return claimed

    async def _current_status(self, request_id: UUID) -> MintStatus | None:
        doc = await self.requests.find_one({"_id": str(request_id)}, {"status": 1})
        return MintStatus.parse(doc["status"]) if doc else None

    async def update_status(self, request_id: UUID, status: MintStatus) -> None:
        if status.is_terminal:
            raise ValueError("Terminal states are written with record_outcome")
        async with self._guard("update_status"):
            matched = 0
            if status == MintStatus.PROCESSING:
                result = await self.requests.update_one(
                    {"_id": str(request_id), "status": MintStatus.PENDING.value},
                    {"$set": {"status": status.value}, "$inc": {"attempt": 1}},
                )
                matched = result.matched_count
            if matched == 0:
                raise InvalidTransitionError(
                    request_id, await self._current_status(request_id), status
                )

    async def record_outcome(self, outcome: MintOutcome) -> None:
        request = outcome.request
        async with self._guard("record_outcome"):
            result = await self.requests.update_one(
                {
                    "_id": str(request.id),
                    "status": {
                        "$in": [
                            MintStatus.PENDING.value,
                            MintStatus.PROCESSING.value,
                            request.status.value,
                        ]
                    },
                },
                {
                    "$set": {
                        "status": request.status.value,
                        "tx_reference": request.tx_reference,
                        "error": request.error,
                        "processed_at": request.processed_at,
                        "attempt": request.attempt,
                    }
                },
            )
            if result.matched_count == 0:
                raise InvalidTransitionError(
                    request.id, await self._current_status(request.id), request.status
                )

    async def find_request(self, request_id: UUID) -> MintRequest | None:
        async with self._guard("find_request"):
            doc = await self.requests.find_one({"_id": str(request_id)})
        return _request_from_doc(doc) if doc else None

    # ========================================================================
    # Quota ledger
    # ========================================================================

    async def _increment_quota(self, operation: str, user_id: UUID, day: date, inc: dict[str, int]) -> None:
        key = {"user_id": str(user_id), "day": day.isoformat()}
        defaults = {field: 0 for field in ("minted_total", "success_count") if field not in inc}
        update: dict[str, Any] = {"$inc": inc}
        if defaults:
            update["$setOnInsert"] = defaults
        async with self._guard(operation):
            try:
                await self.quotas.update_one(key, update, upsert=True)
            except DuplicateKeyError:
                # Concurrent first write for the day; the row exists now
                await self.quotas.update_one(key, update)

    async def record_mint(self, user_id: UUID, day: date, amount: int) -> None:
        await self._increment_quota("record_mint", user_id, day, {"minted_total": amount})

    async def record_success(self, user_id: UUID, day: date) -> None:
        await self._increment_quota("record_success", user_id, day, {"success_count": 1})

    async def fetch_quota(self, user_id: UUID, day: date) -> Quota | None:
        async with self._guard("fetch_quota"):
            doc = await self.quotas.find_one({"user_id": str(user_id), "day": day.isoformat()})
        if doc is None:
            return None
        return Quota(
            user_id=user_id,
            day=day,
            minted_total=doc.get("minted_total", 0),
            success_count=doc.get("success_count", 0),
        )

    # ========================================================================
    # Reporting
    # ========================================================================

    async def daily_summary(self, day: date) -> list[DailyReportRow]:
        start, end = day_bounds(day)
        pipeline: list[dict[str, Any]] = [
            {"$match": {"requested_at": {"$gte": start, "$lt": end}}},
            {
                "$group": {
                    "_id": "$channel",
                    "total_amount": {"$sum": "$amount"},
                    "success_count": {
                        "$sum": {"$cond": [{"$eq": ["$status", MintStatus.COMPLETED.value]}, 1, 0]}
                    },
                    "failure_count": {
                        "$sum": {"$cond": [{"$eq": ["$status", MintStatus.FAILED.value]}, 1, 0]}
                    },
                }
            },
            {"$sort": {"_id": 1}},
        ]
        async with self._guard("daily_summary"):
            cursor = await self.requests.aggregate(pipeline)
            docs = await cursor.to_list()

        return [
            DailyReportRow(
                channel=doc["_id"],
                total_amount=int(doc["total_amount"]),
                success_count=int(doc["success_count"]),
                failure_count=int(doc["failure_count"]),
            )
            for doc in docs
        ]

    async def log_failure(self, request_id: UUID, when: datetime, reason: str) -> None:
        async with self._guard("log_failure"):
            await self.failures.insert_one(
                {"request_id": str(request_id), "failed_at": when, "reason": reason}
            )

    async def list_failures(self, request_id: UUID | None = None) -> list[MintFailure]:
        query = {"request_id": str(request_id)} if request_id is not None else {}
        async with self._guard("list_failures"):
            docs = await self.failures.find(query).sort("_id", ASCENDING).to_list()
        return [
            MintFailure(
                request_id=UUID(doc["request_id"]),
                failed_at=doc["failed_at"],
                reason=doc["reason"],
            )
            for doc in docs
        ]

    # ========================================================================
    # System config
    # ========================================================================

    async def get_config(self, key: str) -> SystemConfigEntry | None:
        async with self._guard("get_config"):
            doc = await self.configs.find_one({"_id": key})
        return _config_from_doc(doc) if doc else None

    async def set_config(self, key: str, value: str, description: str | None = None) -> None:
        now = utc_now()
        fields: dict[str, Any] = {"value": value, "updated_at": now}
        on_insert: dict[str, Any] = {"created_at": now}
        if description is not None:
            fields["description"] = description
        else:
            on_insert["description"] = None
        async with self._guard("set_config"):
            await self.configs.update_one(
                {"_id": key},
                {"$set": fields, "$setOnInsert": on_insert},
                upsert=True,
            )

    async def list_configs(self) -> list[SystemConfigEntry]:
        async with self._guard("list_configs"):
            docs = await self.configs.find({}).sort("_id", ASCENDING).to_list()
        return [_config_from_doc(doc) for doc in docs]
