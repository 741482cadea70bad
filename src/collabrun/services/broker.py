"""Redis-backed job queue and result channel for the decoupled deployment.

Keys, all prefixed with the queue name:
  <name>:pending           list, LPUSH on admission, consumed from the right (FIFO)
  <name>:processing:<c>    list per consumer, in-flight ids moved atomically by BLMOVE
  <name>:lease:<c>         string, present while consumer <c> is alive (expires after lease_s)
  <name>:consumers         set, every consumer id that has held a processing list
  <name>:jobs              hash, id -> job payload
  <name>:result:<id>       string, terminal outcome (expires after ttl)
  <name>:notify:<id>       list, one entry per outcome, what blocking waiters pop
  <name>:events            pub/sub channel, every outcome
  <name>:cancel            pub/sub channel, ids whose running execution must be killed
"""
from __future__ import annotations

import math
import threading
import time
from typing import Iterator, List, Optional
from uuid import uuid4

import redis
import structlog
from redis.exceptions import RedisError

from .job_queue import JobQueue
from .reporter import ResultReporter
from ..core.errors import BrokerUnavailable
from ..core.models import Job, Outcome

log = structlog.get_logger(__name__)


def connect(url: str) -> redis.Redis:
    return redis.Redis.from_url(
        url, decode_responses=True, socket_connect_timeout=5, health_check_interval=30,
    )


class RedisJobQueue(JobQueue):
    """
    Each consumer moves jobs into its own processing list and keeps a lease
    key alive while it runs. Only lists whose lease has expired are recovered.
    """

    def __init__(
        self,
        client: redis.Redis,
        name: str = "code-execution",
        backoff_s: float = 1.0,
        consumer_id: Optional[str] = None,
        lease_s: float = 30.0,
    ):
        self.client = client
        self.name = name
        self.backoff_s = backoff_s
        self.consumer_id = consumer_id or uuid4().hex[:12]
        self.lease_s = lease_s
        self.pending_key = f"{name}:pending"
        self.processing_key = self._processing_key(self.consumer_id)
        self.lease_key = self._lease_key(self.consumer_id)
        self.consumers_key = f"{name}:consumers"
        self.jobs_key = f"{name}:jobs"
        self.cancel_channel = f"{name}:cancel"
        self._closed = threading.Event()
        self._last_beat = float("-inf")

    def _processing_key(self, consumer_id: str) -> str:
        return f"{self.name}:processing:{consumer_id}"

    def _lease_key(self, consumer_id: str) -> str:
        return f"{self.name}:lease:{consumer_id}"

    def enqueue(self, job: Job) -> str:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(self.jobs_key, job.id, job.to_json())
            pipe.lpush(self.pending_key, job.id)
            pipe.execute()
        except RedisError as e:
            raise BrokerUnavailable(f"enqueue failed: {e}") from e
        return job.id

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        if self._closed.is_set():
            return None
        if time.monotonic() - self._last_beat >= self.lease_s / 3:
            self.heartbeat()
        try:
            job_id = self.client.blmove(
                self.pending_key, self.processing_key, timeout or 0, "RIGHT", "LEFT"
            )
            if job_id is None:
                return None
            raw = self.client.hget(self.jobs_key, job_id)
        except RedisError as e:
            log.warning("broker_dequeue_failed", err=str(e))
            self._closed.wait(self.backoff_s)
            return None
        if raw is None:
            # cancelled between the move and the read
            self.ack(job_id)
            return None
        return Job.from_json(raw)

    def ack(self, job_id: str) -> None:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.lrem(self.processing_key, 1, job_id)
            pipe.hdel(self.jobs_key, job_id)
            pipe.execute()
        except RedisError as e:
            log.warning("broker_ack_failed", job_id=job_id, err=str(e))

    def cancel(self, job_id: str) -> bool:
        try:
            removed = self.client.lrem(self.pending_key, 0, job_id)
            if removed:
                self.client.hdel(self.jobs_key, job_id)
        except RedisError as e:
            raise BrokerUnavailable(f"cancel failed: {e}") from e
        return bool(removed)

    def close(self) -> List[str]:
        self._closed.set()
        try:
            ids = self.client.lrange(self.pending_key, 0, -1)
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(self.pending_key)
            if ids:
                pipe.hdel(self.jobs_key, *ids)
            pipe.execute()
        except RedisError as e:
            log.warning("broker_close_failed", err=str(e))
            return []
        if ids:
            log.info("queue_discarded_on_close", count=len(ids))
        return list(reversed(ids))

    def heartbeat(self) -> None:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self.lease_key, "1", ex=max(1, int(math.ceil(self.lease_s))))
            pipe.sadd(self.consumers_key, self.consumer_id)
            pipe.execute()
        except RedisError as e:
            log.warning("broker_heartbeat_failed", consumer=self.consumer_id, err=str(e))
            return
        self._last_beat = time.monotonic()

    def recover(self) -> List[str]:
        """Put in-flight jobs of consumers whose lease expired back at the head of the queue, attempt + 1."""
        self.heartbeat()
        moved: List[str] = []
        try:
            for consumer in self.client.smembers(self.consumers_key):
                if consumer == self.consumer_id or self.client.exists(self._lease_key(consumer)):
                    continue
                moved += self._redeliver(self._processing_key(consumer))
                self.client.srem(self.consumers_key, consumer)
                log.info("consumer_expired", consumer=consumer)
        except RedisError as e:
            log.warning("broker_recover_failed", err=str(e))
        if moved:
            log.warning("jobs_redelivered", count=len(moved))
        return moved

    def _redeliver(self, src: str) -> List[str]:
        moved = []
        while True:
            job_id = self.client.lmove(src, self.pending_key, "LEFT", "RIGHT")
            if job_id is None:
                return moved
            raw = self.client.hget(self.jobs_key, job_id)
            if raw is not None:
                job = Job.from_json(raw)
                job.attempt += 1
                self.client.hset(self.jobs_key, job_id, job.to_json())
            moved.append(job_id)

    def announce_cancel(self, job_id: str) -> None:
        try:
            self.client.publish(self.cancel_channel, job_id)
        except RedisError as e:
            raise BrokerUnavailable(f"cancel broadcast failed: {e}") from e

    def cancel_requests(self, stop: threading.Event) -> Iterator[str]:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(self.cancel_channel)
        try:
            while not stop.is_set():
                msg = pubsub.get_message(timeout=1.0)
                if msg and msg.get("type") == "message":
                    yield msg["data"]
        finally:
            pubsub.close()

    def __len__(self) -> int:
        return int(self.client.llen(self.pending_key))


class RedisResultReporter(ResultReporter):
    """Mirrors every outcome into Redis so callers in other processes can wait on it."""

    def __init__(self, client: redis.Redis, name: str = "code-execution", ttl_s: float = 300):
        super().__init__(ttl_s=ttl_s)
        self.client = client
        self.name = name
        self.events_channel = f"{name}:events"

    def _result_key(self, job_id: str) -> str:
        return f"{self.name}:result:{job_id}"

    def _notify_key(self, job_id: str) -> str:
        return f"{self.name}:notify:{job_id}"

    def _forward(self, outcome: Outcome) -> None:
        payload = outcome.to_json()
        ttl = int(self.ttl_s)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self._result_key(outcome.job_id), payload, ex=ttl)
            pipe.rpush(self._notify_key(outcome.job_id), "1")
            pipe.expire(self._notify_key(outcome.job_id), ttl)
            pipe.publish(self.events_channel, payload)
            pipe.execute()
        except RedisError as e:
            log.error("result_forward_failed", job_id=outcome.job_id, err=str(e))

    def abandon(self, job_id: str) -> None:
        super().abandon(job_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.rpush(self._notify_key(job_id), "0")
            pipe.expire(self._notify_key(job_id), int(self.ttl_s))
            pipe.execute()
        except RedisError as e:
            log.warning("abandon_forward_failed", job_id=job_id, err=str(e))

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Outcome]:
        local = super().peek(job_id)
        if local is not None:
            return local
        try:
            raw = self.client.get(self._result_key(job_id))
            if raw is None:
                if self.client.blpop([self._notify_key(job_id)], timeout=timeout or 0) is None:
                    return None
                raw = self.client.get(self._result_key(job_id))
        except RedisError as e:
            raise BrokerUnavailable(f"result wait failed: {e}") from e
        return Outcome.from_json(raw) if raw else None

    def peek(self, job_id: str) -> Optional[Outcome]:
        local = super().peek(job_id)
        if local is not None:
            return local
        try:
            raw = self.client.get(self._result_key(job_id))
        except RedisError as e:
            raise BrokerUnavailable(f"result lookup failed: {e}") from e
        return Outcome.from_json(raw) if raw else None
