import threading
import time

from collabrun.core.models import JobStatus, Outcome
from collabrun.services.reporter import ResultReporter


def _ok(job_id="j1", output="hi\n"):
    return Outcome(job_id, JobStatus.SUCCEEDED, output)


def test_publish_wakes_waiter(reporter):
    got = []
    t = threading.Thread(target=lambda: got.append(reporter.wait("j1", timeout=5)))
    t.start()
    time.sleep(0.05)
    assert reporter.publish(_ok())
    t.join(5)
    assert got[0].output == "hi\n"


def test_exactly_once(reporter):
    seen = []
    reporter.subscribe(seen.append)
    assert reporter.publish(_ok())
    assert not reporter.publish(_ok(output="again"))
    assert [o.output for o in seen] == ["hi\n"]
    assert reporter.peek("j1").output == "hi\n"


def test_wait_times_out(reporter):
    start = time.monotonic()
    assert reporter.wait("never", timeout=0.1) is None
    assert time.monotonic() - start < 1


def test_abandon_releases_waiters(reporter):
    got = []
    t = threading.Thread(target=lambda: got.append(reporter.wait("j1", timeout=5)))
    t.start()
    time.sleep(0.05)
    reporter.abandon("j1")
    t.join(1)
    assert not t.is_alive()
    assert got == [None]
    assert reporter.peek("j1") is None


def test_failing_listener_does_not_block_others(reporter):
    seen = []

    def boom(_):
        raise RuntimeError("listener broke")

    reporter.subscribe(boom)
    reporter.subscribe(seen.append)
    assert reporter.publish(_ok())
    assert len(seen) == 1


def test_unsubscribe(reporter):
    seen = []
    unsubscribe = reporter.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    reporter.publish(_ok())
    assert seen == []


def test_results_expire_after_ttl():
    r = ResultReporter(ttl_s=0.05)
    r.publish(_ok("old"))
    time.sleep(0.1)
    r.publish(_ok("new"))
    assert r.peek("old") is None
    assert r.peek("new") is not None
