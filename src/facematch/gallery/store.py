"""Capacity-bounded gallery of enrolled identities.

``GalleryStore`` owns the enabled gallery records and enforces the capacity
and per-identity uniqueness invariants. Storage calls are blocking and run
in worker threads; every mutation is serialized by a single writer lock so
that the capacity check and the write that follows it happen as one unit,
inside one backend transaction.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional, Sequence, Union

import numpy as np

from ..config import MatchingConfig
from ..embedding import Embedding
from ..errors import (
    CapacityExceeded,
    DimensionMismatch,
    ErrorKind,
    IdentityNotFound,
    InvalidVectorError,
)
from .backend import GalleryBackend, SqliteGalleryBackend
from .records import GalleryRecord, GalleryStats

logger = logging.getLogger(__name__)

# Receives the full list of enabled records after each committed mutation
SnapshotCallback = Callable[[List[GalleryRecord]], None]


class GalleryStore:
    """Async, observable gallery of enrolled embeddings.

    Supports:
    - Enrollment with replace-on-re-enroll semantics
    - Capacity enforcement and oldest-first eviction
    - Soft enable/disable
    - Snapshot notifications for observers
    """

    def __init__(
        self,
        config: MatchingConfig,
        backend: Optional[GalleryBackend] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize gallery store.

        Args:
            config: Validated matching configuration (dimension, capacity)
            backend: Storage backend. Defaults to SQLite at config.database_path
            clock: Source of timestamps
        """
        self.config = config
        self._backend = backend or SqliteGalleryBackend(config.database_path)
        self._clock = clock

        self._write_lock: Optional[asyncio.Lock] = None
        self._lock_loop = None
        self._subscribers: List[SnapshotCallback] = []
        self._watchers: List[asyncio.Queue] = []

    def _lock(self) -> asyncio.Lock:
        """Writer lock bound to the running event loop.

        Created on first use so a store built outside a loop, or reused
        under a later ``asyncio.run``, never waits on a foreign loop.
        """
        loop = asyncio.get_running_loop()
        if self._write_lock is None or self._lock_loop is not loop:
            self._write_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._write_lock

    @property
    def capacity(self) -> int:
        return self.config.capacity

    @property
    def backend(self) -> GalleryBackend:
        return self._backend

    async def __aenter__(self) -> "GalleryStore":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Close the storage backend."""
        self._backend.close()

    # -------------------------------------------------------------------------
    # Enrollment
    # -------------------------------------------------------------------------

    async def enroll(
        self,
        identity: str,
        vector: Union[Sequence[float], np.ndarray],
        quality: Optional[float] = None,
        remarks: Optional[str] = None,
        attachment: Optional[bytes] = None,
    ) -> int:
        """Enroll or re-enroll an identity.

        Args:
            identity: Identity label
            vector: Embedding vector of the configured dimension
            quality: Extraction quality in [0, 1]
            remarks: Free-text note stored with the record
            attachment: Opaque payload such as a thumbnail

        Returns:
            Record id

        Raises:
            CapacityExceeded: Enrolling a new identity would exceed capacity
            DimensionMismatch: Vector has the wrong length
            InvalidVectorError: Vector is non-finite or near zero
        """
        now = self._clock()
        embedding = Embedding(identity, vector, quality, created_at=now)
        return await self.enroll_embedding(embedding, remarks=remarks, attachment=attachment)

    async def enroll_embedding(
        self,
        embedding: Embedding,
        remarks: Optional[str] = None,
        attachment: Optional[bytes] = None,
    ) -> int:
        """Enroll an Embedding. See ``enroll``."""
        self._check_enrollable(embedding)

        async with self._lock():
            record = await asyncio.to_thread(self._enroll_sync, embedding, remarks, attachment)
            await self._publish()

        return record.id

    def _enroll_sync(
        self,
        embedding: Embedding,
        remarks: Optional[str],
        attachment: Optional[bytes],
    ) -> GalleryRecord:
        now = self._clock()
        with self._backend.atomic():
            existing = self._backend.get_by_identity(embedding.identity, include_disabled=True)

            if existing is not None and existing.enabled:
                record = self._replace_vector(existing, embedding, remarks, attachment, now)
                self._backend.update(record)
                logger.info(
                    f"Re-enrolled {record.identity} (record {record.id}, version {record.version})"
                )
                return record

            self._check_capacity(self._backend.count_enabled(), 1)

            if existing is not None:
                record = replace(
                    self._replace_vector(existing, embedding, remarks, attachment, now),
                    enabled=True,
                )
                self._backend.update(record)
                logger.info(f"Re-activated {record.identity} (record {record.id})")
                return record

            record = self._backend.insert(
                GalleryRecord.from_embedding(embedding, remarks, attachment, now=now)
            )
            logger.info(f"Enrolled {record.identity} as record {record.id}")
            return record

    async def enroll_batch(self, embeddings: Sequence[Embedding]) -> List[int]:
        """Enroll several embeddings at once.

        The capacity check is made once against the full batch size; the
        whole batch is written in one transaction or not at all.

        Returns:
            Record ids in batch order
        """
        if not embeddings:
            return []

        identities = [e.identity for e in embeddings]
        if len(set(identities)) != len(identities):
            raise ValueError("Batch contains duplicate identities")
        for embedding in embeddings:
            self._check_enrollable(embedding)

        async with self._lock():
            records = await asyncio.to_thread(self._enroll_batch_sync, list(embeddings))
            await self._publish()

        logger.info(f"Enrolled batch of {len(records)} identities")
        return [r.id for r in records]

    def _enroll_batch_sync(self, embeddings: List[Embedding]) -> List[GalleryRecord]:
        now = self._clock()
        with self._backend.atomic():
            self._check_capacity(self._backend.count_enabled(), len(embeddings))

            pending = []
            for embedding in embeddings:
                existing = self._backend.get_by_identity(embedding.identity, include_disabled=True)
                if existing is None:
                    pending.append(GalleryRecord.from_embedding(embedding, now=now))
                else:
                    pending.append(
                        replace(existing.with_vector(embedding, now), enabled=True)
                    )
            return self._backend.upsert_many(pending)

    @staticmethod
    def _replace_vector(
        existing: GalleryRecord,
        embedding: Embedding,
        remarks: Optional[str],
        attachment: Optional[bytes],
        now: datetime,
    ) -> GalleryRecord:
        record = existing.with_vector(embedding, now)
        if remarks is not None:
            record = replace(record, remarks=remarks)
        if attachment is not None:
            record = replace(record, attachment=attachment)
        return record

    def _check_enrollable(self, embedding: Embedding):
        if not embedding.identity or not embedding.identity.strip():
            raise ValueError("identity must be a non-empty string")

        error = embedding.validate(self.config.dimension, self.config.min_vector_norm)
        if error is ErrorKind.DIMENSION_MISMATCH:
            raise DimensionMismatch(self.config.dimension, embedding.dimension)
        if error is ErrorKind.INVALID_VECTOR:
            raise InvalidVectorError(
                f"Embedding for '{embedding.identity}' has non-finite values or a near-zero norm"
            )

    def _check_capacity(self, enabled_count: int, additional: int):
        if enabled_count + additional > self.config.capacity:
            logger.warning(
                f"Capacity exceeded: {enabled_count} enabled + {additional} "
                f"> {self.config.capacity}"
            )
            raise CapacityExceeded(self.config.capacity)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    async def delete(self, identity: str) -> bool:
        """Delete an identity.

        Returns:
            True if a record existed
        """
        async with self._lock():
            deleted = await asyncio.to_thread(self._backend.delete_by_identity, identity)
            if deleted:
                await self._publish()

        if deleted:
            logger.info(f"Deleted identity: {identity}")
        return deleted > 0

    async def set_enabled(self, identity: str, enabled: bool) -> GalleryRecord:
        """Enable or disable an identity without deleting its data.

        Raises:
            IdentityNotFound: No record for ``identity``
            CapacityExceeded: Enabling would exceed capacity
        """
        async with self._lock():
            record, changed = await asyncio.to_thread(self._set_enabled_sync, identity, enabled)
            if changed:
                await self._publish()
        return record

    def _set_enabled_sync(self, identity: str, enabled: bool):
        with self._backend.atomic():
            existing = self._backend.get_by_identity(identity, include_disabled=True)
            if existing is None:
                raise IdentityNotFound(identity)
            if existing.enabled == enabled:
                return existing, False
            if enabled:
                self._check_capacity(self._backend.count_enabled(), 1)

            record = existing.with_enabled(enabled, self._clock())
            self._backend.update(record)

        logger.info(f"{'Enabled' if enabled else 'Disabled'} identity: {identity}")
        return record, True

    async def update_remarks(self, identity: str, remarks: Optional[str]) -> GalleryRecord:
        """Replace the remarks of an enrolled identity."""
        return await self._transform(identity, lambda r, now: r.with_remarks(remarks, now))

    async def update_attachment(self, identity: str, attachment: Optional[bytes]) -> GalleryRecord:
        """Replace the attachment of an enrolled identity."""
        return await self._transform(identity, lambda r, now: r.with_attachment(attachment, now))

    async def _transform(self, identity: str, change) -> GalleryRecord:
        def apply() -> GalleryRecord:
            with self._backend.atomic():
                existing = self._backend.get_by_identity(identity, include_disabled=True)
                if existing is None:
                    raise IdentityNotFound(identity)
                record = change(existing, self._clock())
                self._backend.update(record)
                return record

        async with self._lock():
            record = await asyncio.to_thread(apply)
            if record.enabled:
                await self._publish()
        return record

    async def evict_oldest(self, target_count: int) -> int:
        """Delete the oldest enabled records until at most ``target_count`` remain.

        Returns:
            Number of records evicted
        """
        if target_count < 0:
            raise ValueError(f"target_count must be >= 0, got {target_count}")

        def evict() -> int:
            with self._backend.atomic():
                excess = self._backend.count_enabled() - target_count
                if excess <= 0:
                    return 0
                oldest = self._backend.oldest_enabled(excess)
                return self._backend.delete_by_ids([r.id for r in oldest])

        async with self._lock():
            evicted = await asyncio.to_thread(evict)
            if evicted:
                await self._publish()

        if evicted:
            logger.info(f"Evicted {evicted} oldest record(s), target {target_count}")
        return evicted

    async def cleanup_expired(self, before: datetime) -> int:
        """Delete records created before ``before``.

        Returns:
            Number of records deleted
        """
        async with self._lock():
            deleted = await asyncio.to_thread(self._backend.delete_created_before, before)
            if deleted:
                await self._publish()

        if deleted:
            logger.info(f"Removed {deleted} record(s) created before {before.isoformat()}")
        return deleted

    async def clear(self) -> int:
        """Delete every record. Returns the number deleted."""
        async with self._lock():
            deleted = await asyncio.to_thread(self._backend.delete_all)
            await self._publish()

        logger.info(f"Gallery cleared ({deleted} records)")
        return deleted

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get(self, identity: str, include_disabled: bool = False) -> Optional[GalleryRecord]:
        return await asyncio.to_thread(self._backend.get_by_identity, identity, include_disabled)

    async def get_by_id(self, record_id: int) -> Optional[GalleryRecord]:
        return await asyncio.to_thread(self._backend.get_by_id, record_id)

    async def contains(self, identity: str) -> bool:
        """Check whether an enabled record exists for ``identity``."""
        return await self.get(identity) is not None

    async def list_enabled(self) -> List[GalleryRecord]:
        """Enabled records, most recently created first."""
        return await asyncio.to_thread(self._backend.list_enabled)

    async def list_all(self) -> List[GalleryRecord]:
        return await asyncio.to_thread(self._backend.list_all)

    async def candidates(self) -> List[Embedding]:
        """Enabled records as embeddings for the comparator."""
        return [record.to_embedding() for record in await self.list_enabled()]

    async def count(self) -> int:
        """Number of enabled records."""
        return await asyncio.to_thread(self._backend.count_enabled)

    async def remaining_capacity(self) -> int:
        return max(0, self.config.capacity - await self.count())

    async def is_full(self) -> bool:
        return await self.count() >= self.config.capacity

    async def search(self, keyword: str) -> List[GalleryRecord]:
        """Enabled records whose identity or remarks contain ``keyword``."""
        return await asyncio.to_thread(self._backend.search, keyword)

    async def recent(self, limit: int = 10) -> List[GalleryRecord]:
        return await asyncio.to_thread(self._backend.recent, limit)

    async def high_quality(self, min_quality: float = 0.8) -> List[GalleryRecord]:
        return await asyncio.to_thread(self._backend.by_quality, min_quality, 1.0)

    async def in_time_range(self, start: datetime, end: datetime) -> List[GalleryRecord]:
        return await asyncio.to_thread(self._backend.in_time_range, start, end)

    async def updated_since(self, version: int) -> List[GalleryRecord]:
        return await asyncio.to_thread(self._backend.updated_since, version)

    async def stats(self) -> GalleryStats:
        return await asyncio.to_thread(self._backend.stats)

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a callback receiving the enabled list after each mutation.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe():
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: SnapshotCallback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def watch_enabled(self) -> AsyncIterator[List[GalleryRecord]]:
        """Yield the current enabled list, then a new one after every mutation.

        A slow consumer skips intermediate snapshots and receives the most
        recent one.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._watchers.append(queue)
        try:
            yield await self.list_enabled()
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(queue)

    async def _publish(self):
        """Deliver a post-commit snapshot. Called with the write lock held."""
        if not self._subscribers and not self._watchers:
            return

        snapshot = await asyncio.to_thread(self._backend.list_enabled)

        for callback in list(self._subscribers):
            try:
                callback(list(snapshot))
            except Exception:
                logger.exception("Gallery subscriber failed")

        # Watchers only need the latest snapshot
        for queue in list(self._watchers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(list(snapshot))
