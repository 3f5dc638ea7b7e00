"""
Audit Store

Storage abstraction for audit entries and export metadata. The in-memory
store backs tests and development; the Redis store is used in production.
Both reject a batch that does not extend the stored chain head.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import structlog
from redis.exceptions import RedisError, WatchError

from compliance_pipeline.exceptions import ChainConflictError, StorageError
from compliance_pipeline.models.audit import AuditLogEntry, AuditQuery
from compliance_pipeline.services.integrity import GENESIS_HASH

logger = structlog.get_logger()


def _check_links(head: str, entries: List[AuditLogEntry]) -> None:
    """Every entry must link to its predecessor, the first to ``head``"""
    expected = head
    for entry in entries:
        if (entry.previous_hash or GENESIS_HASH) != expected:
            raise ChainConflictError(
                f"Entry {entry.id} does not extend the stored chain head"
            )
        expected = entry.integrity_hash or GENESIS_HASH


class AuditStore(ABC):
    """Audit storage interface"""

    @abstractmethod
    async def write_batch(self, entries: List[AuditLogEntry]) -> None:
        """Append entries atomically; all or nothing"""

    @abstractmethod
    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        """Matching entries in chain order, paginated"""

    @abstractmethod
    async def count(self, query: AuditQuery) -> int:
        """Number of matching entries, ignoring pagination"""

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        pass

    @abstractmethod
    async def last_hash(self) -> str:
        """Integrity hash of the newest stored entry (genesis when empty)"""

    async def chain_start_hash(self) -> str:
        """Hash the oldest stored entry links to; genesis unless entries expired"""
        return GENESIS_HASH

    @abstractmethod
    async def save_export_metadata(
        self,
        export_id: str,
        metadata: Dict[str, Any],
        ttl_seconds: Optional[int] = None
    ) -> None:
        pass

    @abstractmethod
    async def get_export_metadata(self, export_id: str) -> Optional[Dict[str, Any]]:
        pass

    async def close(self) -> None:
        pass


class InMemoryAuditStore(AuditStore):
    """
    In-memory audit store

    Suitable for tests and development. Data is lost on restart.
    """

    def __init__(self):
        self._entries: List[AuditLogEntry] = []
        self._by_id: Dict[str, AuditLogEntry] = {}
        self._exports: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def write_batch(self, entries: List[AuditLogEntry]) -> None:
        if not entries:
            return
        async with self._lock:
            head = self._entries[-1].integrity_hash if self._entries else GENESIS_HASH
            _check_links(head or GENESIS_HASH, entries)
            for entry in entries:
                self._entries.append(entry)
                self._by_id[entry.id] = entry

    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        async with self._lock:
            matched = [e for e in self._entries if query.matches(e)]
        return query.paginate(matched)

    async def count(self, query: AuditQuery) -> int:
        async with self._lock:
            return sum(1 for e in self._entries if query.matches(e))

    async def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        return self._by_id.get(entry_id)

    async def last_hash(self) -> str:
        async with self._lock:
            if not self._entries:
                return GENESIS_HASH
            return self._entries[-1].integrity_hash or GENESIS_HASH

    async def save_export_metadata(
        self,
        export_id: str,
        metadata: Dict[str, Any],
        ttl_seconds: Optional[int] = None
    ) -> None:
        self._exports[export_id] = dict(metadata)

    async def get_export_metadata(self, export_id: str) -> Optional[Dict[str, Any]]:
        return self._exports.get(export_id)

    def __len__(self) -> int:
        return len(self._entries)


class RedisAuditStore(AuditStore):
    """
    Redis audit store

    Entries live under ``audit:<resource_type>:<resource_id>:<epoch ms>:<id>``
    with a TTL of their retention period. A sorted set indexes entry keys
    by chain position. Appends run in a WATCH/MULTI transaction on the chain
    head, so two writers can never both extend the same head.

    Expects a ``redis.asyncio`` client created with ``decode_responses=True``.
    """

    KEY_PREFIX = "audit:"
    LAST_HASH_KEY = "audit:chain:last_hash"
    LENGTH_KEY = "audit:chain:length"
    INDEX_KEY = "audit:chain:index"
    IDS_KEY = "audit:chain:ids"
    EXPORT_PREFIX = "audit_export:"

    def __init__(self, redis_client):
        self._client = redis_client

    def _make_key(self, entry: AuditLogEntry) -> str:
        epoch_ms = int(entry.timestamp.timestamp() * 1000)
        return (
            f"{self.KEY_PREFIX}{entry.resource_type}:{entry.resource_id or '-'}:"
            f"{epoch_ms}:{entry.id}"
        )

    @staticmethod
    def _decode(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def write_batch(self, entries: List[AuditLogEntry]) -> None:
        if not entries:
            return
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(self.LAST_HASH_KEY)
                head = self._decode(await pipe.get(self.LAST_HASH_KEY)) or GENESIS_HASH
                length = int(self._decode(await pipe.get(self.LENGTH_KEY)) or 0)
                _check_links(head, entries)

                pipe.multi()
                for position, entry in enumerate(entries, start=length):
                    key = self._make_key(entry)
                    pipe.set(key, entry.model_dump_json(), ex=entry.retention_days * 86400)
                    pipe.zadd(self.INDEX_KEY, {key: position})
                    pipe.hset(self.IDS_KEY, entry.id, key)
                pipe.set(self.LAST_HASH_KEY, entries[-1].integrity_hash or GENESIS_HASH)
                pipe.set(self.LENGTH_KEY, length + len(entries))
                await pipe.execute()
        except WatchError as e:
            logger.warning("audit_chain_conflict", batch_size=len(entries))
            raise ChainConflictError("Chain head changed during write") from e
        except RedisError as e:
            logger.error("audit_store_write_failed", batch_size=len(entries), error_type=type(e).__name__)
            raise StorageError("Audit store write failed") from e

    async def _load_values(self) -> List[Optional[str]]:
        """Stored entry bodies in chain order; None where the entry expired"""
        try:
            keys = await self._client.zrange(self.INDEX_KEY, 0, -1)
            if not keys:
                return []
            values = await self._client.mget(keys)
        except RedisError as e:
            raise StorageError("Audit store read failed") from e
        return [self._decode(value) for value in values]

    async def _load_chain(self) -> List[AuditLogEntry]:
        # Expired entries leave their index member behind
        return [
            AuditLogEntry.model_validate_json(value)
            for value in await self._load_values()
            if value is not None
        ]

    async def chain_start_hash(self) -> str:
        """
        Link of the oldest surviving entry once retention expired the head

        Only a run of expired entries at the start of the chain moves the
        start; a gap further in still breaks verification.
        """
        values = await self._load_values()
        if not values or values[0] is not None:
            return GENESIS_HASH
        expired = 0
        for value in values:
            if value is None:
                expired += 1
                continue
            logger.info("audit_chain_expired_prefix", expired=expired)
            return AuditLogEntry.model_validate_json(value).previous_hash or GENESIS_HASH
        return GENESIS_HASH

    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        entries = await self._load_chain()
        return query.paginate([e for e in entries if query.matches(e)])

    async def count(self, query: AuditQuery) -> int:
        entries = await self._load_chain()
        return sum(1 for e in entries if query.matches(e))

    async def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        try:
            key = self._decode(await self._client.hget(self.IDS_KEY, entry_id))
            if key is None:
                return None
            value = self._decode(await self._client.get(key))
        except RedisError as e:
            raise StorageError("Audit store read failed") from e
        if value is None:
            return None
        return AuditLogEntry.model_validate_json(value)

    async def last_hash(self) -> str:
        try:
            return self._decode(await self._client.get(self.LAST_HASH_KEY)) or GENESIS_HASH
        except RedisError as e:
            raise StorageError("Audit store read failed") from e

    async def save_export_metadata(
        self,
        export_id: str,
        metadata: Dict[str, Any],
        ttl_seconds: Optional[int] = None
    ) -> None:
        data = json.dumps(metadata, default=str)
        try:
            await self._client.set(f"{self.EXPORT_PREFIX}{export_id}", data, ex=ttl_seconds)
        except RedisError as e:
            raise StorageError("Export metadata write failed") from e

    async def get_export_metadata(self, export_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = self._decode(await self._client.get(f"{self.EXPORT_PREFIX}{export_id}"))
        except RedisError as e:
            raise StorageError("Export metadata read failed") from e
        return json.loads(data) if data else None

    async def close(self) -> None:
        await self._client.aclose()


def create_audit_store(settings) -> AuditStore:
    """Build the store selected by ``AUDIT_STORE``"""
    if settings.AUDIT_STORE == "redis":
        from redis import asyncio as aioredis

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("audit_store_selected", store="redis")
        return RedisAuditStore(client)

    logger.info("audit_store_selected", store="memory")
    return InMemoryAuditStore()
