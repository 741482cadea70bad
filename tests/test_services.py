import pytest

from collabrun import worker
from collabrun.executor.docker import DockerRuntime
from collabrun.executor.factory import build_runtime
from collabrun.executor.local import LocalRuntime
from collabrun.services.job_queue import MemoryJobQueue
from collabrun.services.job_service import build_services
from collabrun.services.reporter import ResultReporter
from collabrun.settings import Settings
from conftest import python_profile, wait_until


def _settings(tmp_path, **kw):
    fields = dict(
        runtime="local",
        broker_url=None,
        artifacts_dir=tmp_path / "artifacts",
        database_url=f"sqlite:///{tmp_path / 'svc.db'}",
        kill_grace_s=0.5,
        languages={"python": python_profile()},
    )
    fields.update(kw)
    return Settings(**fields)


def test_build_runtime(tmp_path):
    assert isinstance(build_runtime(_settings(tmp_path, runtime="docker")), DockerRuntime)
    local = build_runtime(_settings(tmp_path, allow_network=False))
    assert isinstance(local, LocalRuntime) and local.isolate_network
    with pytest.raises(ValueError):
        build_runtime(_settings(tmp_path, runtime="firecracker"))


def test_in_process_services_run_jobs(tmp_path):
    services = build_services(_settings(tmp_path), runtime=LocalRuntime(isolate_network=False))
    assert isinstance(services.queue, MemoryJobQueue)
    assert type(services.reporter) is ResultReporter
    assert services.pool is not None
    services.start()
    try:
        outcome = services.jobs.run("print('up')", "python")
        assert outcome.output == "up\n"
    finally:
        services.stop()


def test_api_only_process_has_no_pool(tmp_path):
    services = build_services(_settings(tmp_path), with_workers=False)
    assert services.pool is None
    services.start()
    services.stop()


def test_worker_requires_a_broker(tmp_path, monkeypatch):
    monkeypatch.setattr(worker, "load_settings", lambda: _settings(tmp_path))
    with pytest.raises(SystemExit):
        worker.main()


def test_running_pool_renews_its_lease(tmp_path):
    services = build_services(_settings(tmp_path, queue_lease_s=0.3),
                              runtime=LocalRuntime(isolate_network=False))
    beats = []
    services.queue.heartbeat = lambda: beats.append(1)
    services.start()
    try:
        assert wait_until(lambda: len(beats) >= 3)
    finally:
        services.stop()
