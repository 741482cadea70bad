import threading
from collections import defaultdict

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from collabrun.core.errors import BrokerUnavailable
from collabrun.core.models import Job, JobStatus, Outcome
from collabrun.services import job_service
from collabrun.services.broker import RedisJobQueue, RedisResultReporter
from collabrun.services.job_service import JobService


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return record

    def execute(self):
        return [getattr(self.client, n)(*a, **kw) for n, a, kw in self.calls]


class FakePubSub:
    def __init__(self, client):
        self.client = client
        self.channels = []
        self.closed = False

    def subscribe(self, channel):
        self.channels.append(channel)

    def get_message(self, timeout=None):
        for ch in self.channels:
            if self.client.published[ch]:
                return {"type": "message", "channel": ch, "data": self.client.published[ch].pop(0)}
        return None

    def close(self):
        self.closed = True


class FakeRedis:
    """Just enough of redis.Redis (decode_responses=True) for the queue and reporter."""

    def __init__(self):
        self.lists = defaultdict(list)
        self.hashes = defaultdict(dict)
        self.strings = {}
        self.ttls = {}
        self.sets = defaultdict(set)
        self.published = defaultdict(list)

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def pubsub(self, ignore_subscribe_messages=False):
        return FakePubSub(self)

    # lists
    def lpush(self, key, *values):
        for v in values:
            self.lists[key].insert(0, v)
        return len(self.lists[key])

    def rpush(self, key, *values):
        self.lists[key].extend(values)
        return len(self.lists[key])

    def _pop(self, key, side):
        items = self.lists[key]
        if not items:
            return None
        return items.pop(0) if side == "LEFT" else items.pop()

    def lmove(self, src, dst, src_side, dst_side):
        v = self._pop(src, src_side)
        if v is not None:
            if dst_side == "LEFT":
                self.lists[dst].insert(0, v)
            else:
                self.lists[dst].append(v)
        return v

    def blmove(self, src, dst, timeout, src_side, dst_side):
        return self.lmove(src, dst, src_side, dst_side)

    def blpop(self, keys, timeout=0):
        for k in keys:
            v = self._pop(k, "LEFT")
            if v is not None:
                return (k, v)
        return None

    def lrem(self, key, count, value):
        # head-first removal; negative counts are not used by the code under test
        n, kept = 0, []
        for v in self.lists[key]:
            if v == value and (count == 0 or n < abs(count)):
                n += 1
                continue
            kept.append(v)
        self.lists[key] = kept
        return n

    def lrange(self, key, start, end):
        items = self.lists[key]
        return list(items[start:] if end == -1 else items[start:end + 1])

    def llen(self, key):
        return len(self.lists[key])

    # hashes
    def hset(self, key, field, value):
        self.hashes[key][field] = value
        return 1

    def hget(self, key, field):
        return self.hashes[key].get(field)

    def hdel(self, key, *fields):
        return sum(1 for f in fields if self.hashes[key].pop(f, None) is not None)

    # sets
    def sadd(self, key, *members):
        before = len(self.sets[key])
        self.sets[key].update(members)
        return len(self.sets[key]) - before

    def srem(self, key, *members):
        n = len(self.sets[key] & set(members))
        self.sets[key].difference_update(members)
        return n

    def smembers(self, key):
        return set(self.sets[key])

    # strings / keys
    def set(self, key, value, ex=None):
        self.strings[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    def get(self, key):
        return self.strings.get(key)

    def exists(self, *keys):
        return sum(1 for k in keys if k in self.strings or self.lists.get(k) or self.hashes.get(k))

    def delete(self, *keys):
        n = 0
        for k in keys:
            n += bool(self.lists.pop(k, None) or self.hashes.pop(k, None) or self.strings.pop(k, None))
        return n

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def publish(self, channel, message):
        self.published[channel].append(message)
        return 1


class DownRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
        return fail


def _job(i, attempt=1):
    return Job(id=f"job{i}", language="python", source_code=f"print({i})", attempt=attempt)


@pytest.fixture
def fake():
    return FakeRedis()


@pytest.fixture
def rq(fake):
    return RedisJobQueue(fake, "q", backoff_s=0.01, consumer_id="a", lease_s=30)


def test_fifo_through_processing_list(fake, rq):
    rq.enqueue(_job(1))
    rq.enqueue(_job(2))
    assert len(rq) == 2
    first = rq.dequeue(timeout=1)
    assert first.id == "job1"
    assert fake.lists["q:processing:a"] == ["job1"]
    assert fake.strings["q:lease:a"] == "1" and fake.ttls["q:lease:a"] == 30
    assert fake.sets["q:consumers"] == {"a"}
    rq.ack("job1")
    assert fake.lists["q:processing:a"] == []
    assert "job1" not in fake.hashes["q:jobs"]
    assert rq.dequeue(timeout=1).id == "job2"
    assert rq.dequeue(timeout=1) is None


def test_cancel_pending(fake, rq):
    rq.enqueue(_job(1))
    rq.enqueue(_job(2))
    assert rq.cancel("job1")
    assert not rq.cancel("job1")
    assert "job1" not in fake.hashes["q:jobs"]
    assert rq.dequeue(timeout=1).id == "job2"


def test_close_discards_pending(fake, rq):
    for i in range(3):
        rq.enqueue(_job(i))
    assert rq.close() == ["job0", "job1", "job2"]
    assert fake.hashes["q:jobs"] == {}
    assert rq.dequeue(timeout=1) is None


def test_live_consumer_keeps_its_jobs(fake, rq):
    rq.enqueue(_job(1))
    assert rq.dequeue(timeout=1).id == "job1"
    other = RedisJobQueue(fake, "q", backoff_s=0.01, consumer_id="b")
    assert other.recover() == []
    assert other.dequeue(timeout=1) is None
    assert rq.recover() == []
    assert fake.lists["q:processing:a"] == ["job1"]


def test_expired_consumer_jobs_are_redelivered_with_next_attempt(fake, rq):
    rq.enqueue(_job(1))
    rq.dequeue(timeout=1)
    # consumer a died before ack and its lease lapsed
    del fake.strings["q:lease:a"]
    other = RedisJobQueue(fake, "q", backoff_s=0.01, consumer_id="b")
    assert other.recover() == ["job1"]
    assert fake.sets["q:consumers"] == {"b"}
    again = other.dequeue(timeout=1)
    assert again.id == "job1"
    assert again.attempt == 2
    assert fake.lists["q:processing:b"] == ["job1"]
    assert other.recover() == []


def test_cancel_broadcast(rq):
    rq.announce_cancel("job7")
    stop = threading.Event()
    it = rq.cancel_requests(stop)
    assert next(it) == "job7"
    stop.set()
    it.close()


def test_broker_down():
    q = RedisJobQueue(DownRedis(), "q", backoff_s=0.01)
    with pytest.raises(BrokerUnavailable):
        q.enqueue(_job(1))
    with pytest.raises(BrokerUnavailable):
        q.cancel("job1")
    assert q.dequeue(timeout=0.01) is None
    q.heartbeat()
    assert q.recover() == []
    assert q.close() == []


def test_submit_creates_nothing_when_broker_is_down(store, reporter, profiles, monkeypatch):
    monkeypatch.setattr(job_service, "new_job_id", lambda: "fixedid")
    jobs = JobService(profiles=profiles, queue=RedisJobQueue(DownRedis(), "q"),
                      store=store, reporter=reporter)
    with pytest.raises(BrokerUnavailable):
        jobs.submit("print(1)", "python")
    assert store.get("fixedid") is None


def test_result_crosses_processes(fake):
    worker_side = RedisResultReporter(fake, "q", ttl_s=60)
    api_side = RedisResultReporter(fake, "q", ttl_s=60)
    outcome = Outcome("job1", JobStatus.SUCCEEDED, "2\n")
    assert worker_side.publish(outcome)
    assert fake.ttls["q:result:job1"] == 60
    assert len(fake.published["q:events"]) == 1

    got = api_side.wait("job1", timeout=1)
    assert got.status is JobStatus.SUCCEEDED
    assert got.output == "2\n"
    assert api_side.peek("job1").output == "2\n"


def test_abandon_releases_remote_waiter(fake):
    worker_side = RedisResultReporter(fake, "q")
    api_side = RedisResultReporter(fake, "q")
    worker_side.abandon("job1")
    assert api_side.wait("job1", timeout=1) is None


def test_remote_wait_times_out(fake):
    assert RedisResultReporter(fake, "q").wait("job1", timeout=0.01) is None


def test_result_lookup_with_broker_down():
    r = RedisResultReporter(DownRedis(), "q")
    with pytest.raises(BrokerUnavailable):
        r.peek("job1")
    # the local publish still succeeds; forwarding failure is only logged
    assert r.publish(Outcome("job1", JobStatus.FAILED, "x", reason="exit_1"))
    assert r.peek("job1").reason == "exit_1"
