"""Standalone worker process: consumes the Redis queue and runs jobs.

    COLLABRUN_BROKER_URL=redis://127.0.0.1:6379/0 collabrun-worker
"""
from __future__ import annotations
import signal
import threading

import structlog

from .logging import setup_logging
from .services.job_service import build_services
from .settings import load_settings

log = structlog.get_logger(__name__)


def _honour_cancels(queue, pool, stop: threading.Event):
    for job_id in queue.cancel_requests(stop):
        if pool.cancel(job_id):
            log.info("remote_cancel_applied", job_id=job_id)


def main() -> None:
    s = load_settings()
    setup_logging(s.log_level)
    if not s.broker_url:
        raise SystemExit("collabrun-worker needs COLLABRUN_BROKER_URL (or broker_url in conf/sandbox.yaml)")

    services = build_services(s, with_workers=True)
    queue, pool = services.queue, services.pool
    queue.recover()

    stop = threading.Event()

    def _shutdown(signum, frame):
        log.info("worker_shutdown_requested", signal=signum)
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    threading.Thread(
        target=_honour_cancels, args=(queue, pool, stop), name="cancel-listener", daemon=True,
    ).start()
    services.start()
    log.info("worker_process_ready", queue=s.queue_name, size=s.worker_pool_size, runtime=s.runtime)

    # sweep for worker processes whose lease lapsed while this one runs
    while not stop.wait(s.queue_lease_s):
        queue.recover()
    services.stop()


if __name__ == "__main__":
    main()
