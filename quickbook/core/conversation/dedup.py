"""
Inbound Dedup Gate.

Transport event ids are admitted at most once. An admitted event holds a
short in-flight claim (Redis SET NX, or process memory when Redis is
down) until its outcome is written to the ledger; the ledger row then
keeps the reply so a redelivery gets the same acknowledgement without
side effects.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from redis.exceptions import RedisError

from quickbook.config import settings
from quickbook.core.booking.repository import BookingRepository
from quickbook.core.errors import DuplicateEvent, StorageUnavailable
from quickbook.infra.redis import get_redis, namespaced

logger = logging.getLogger(__name__)

INFLIGHT_PREFIX = namespaced("inbound", "inflight", "")


def _utcnow() -> datetime:
    """Current UTC time as a naive datetime (ledger column has no timezone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AdmissionDecision(str, Enum):
    ADMIT = "admit"
    DUPLICATE = "duplicate"


@dataclass
class Admission:
    """Result of checking an event id at the gate."""

    transport_event_id: str
    decision: AdmissionDecision
    previous_reply: Optional[dict] = None   # Reply recorded for a finished duplicate

    @property
    def admitted(self) -> bool:
        return self.decision == AdmissionDecision.ADMIT


class DedupGate:
    """
    At-most-once admission of transport events.

    Key pattern: quickbook:v1:inbound:inflight:{transport_event_id}
    """

    def __init__(
        self,
        repository: BookingRepository,
        retention_seconds: Optional[int] = None,
        inflight_ttl_seconds: Optional[int] = None,
    ):
        self._repository = repository
        self._retention = retention_seconds or settings.dedup_retention_seconds
        self._inflight_ttl = inflight_ttl_seconds or settings.dedup_inflight_ttl_seconds
        self._in_memory_claims: dict[str, float] = {}

    def _key(self, transport_event_id: str) -> str:
        return f"{INFLIGHT_PREFIX}{transport_event_id}"

    async def admit(self, transport_event_id: str) -> Admission:
        """
        Admit an event id unless it was already processed or is in flight.

        Raises:
            StorageUnavailable: The ledger could not be read
        """
        record = await self._repository.get_event(transport_event_id)
        if record is not None:
            logger.info(f"Duplicate event {transport_event_id} (processed {record.processed_at})")
            return Admission(transport_event_id, AdmissionDecision.DUPLICATE, record.reply)

        if not await self._claim(transport_event_id):
            logger.info(f"Duplicate event {transport_event_id} (still in flight)")
            return Admission(transport_event_id, AdmissionDecision.DUPLICATE)

        # An earlier delivery may have finished between the ledger read and the claim
        try:
            record = await self._repository.get_event(transport_event_id)
        except StorageUnavailable:
            await self.release(transport_event_id)
            raise
        if record is not None:
            await self.release(transport_event_id)
            logger.info(f"Duplicate event {transport_event_id} (finished while claiming)")
            return Admission(transport_event_id, AdmissionDecision.DUPLICATE, record.reply)

        logger.debug(f"Admitted event {transport_event_id}")
        return Admission(transport_event_id, AdmissionDecision.ADMIT)

    async def complete(self, transport_event_id: str, reply: Optional[dict]) -> None:
        """
        Record the finished outcome of an admitted event.

        Raises:
            StorageUnavailable: The ledger write failed; the claim is released
                so the transport may redeliver
        """
        try:
            await self._repository.record_event(transport_event_id, _utcnow(), reply)
        except DuplicateEvent:
            logger.warning(f"Event {transport_event_id} was recorded twice")
        except StorageUnavailable:
            await self.release(transport_event_id)
            raise

        await self.release(transport_event_id)

    async def release(self, transport_event_id: str) -> None:
        """Drop the in-flight claim without recording an outcome."""
        redis = await get_redis()
        if redis:
            try:
                await redis.delete(self._key(transport_event_id))
                return
            except RedisError as e:
                logger.warning(f"Failed to release claim for {transport_event_id}: {e}")
        self._in_memory_claims.pop(transport_event_id, None)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete ledger rows older than the retention window."""
        cutoff = (now or _utcnow()) - timedelta(seconds=self._retention)
        purged = await self._repository.purge_events(cutoff)
        if purged:
            logger.info(f"Purged {purged} inbound event records older than {cutoff}")
        return purged

    async def _claim(self, transport_event_id: str) -> bool:
        """Atomically claim an event id for processing."""
        redis = await get_redis()

        if redis:
            try:
                claimed = await redis.set(
                    self._key(transport_event_id), "1", nx=True, ex=self._inflight_ttl
                )
                return bool(claimed)
            except RedisError as e:
                logger.warning(f"Redis claim failed, using in-memory fallback: {e}")

        now = time.monotonic()
        expired = [k for k, expires in self._in_memory_claims.items() if expires <= now]
        for key in expired:
            del self._in_memory_claims[key]
        if transport_event_id in self._in_memory_claims:
            return False
        self._in_memory_claims[transport_event_id] = now + self._inflight_ttl
        return True


async def run_ledger_purge(gate: DedupGate, interval_seconds: Optional[int] = None) -> None:
    """Background task: purge the ledger periodically until cancelled."""
    interval = interval_seconds or settings.dedup_purge_interval_seconds
    while True:
        try:
            await gate.purge_expired()
        except StorageUnavailable as e:
            logger.error(f"Ledger purge failed: {e}")
        await asyncio.sleep(interval)
