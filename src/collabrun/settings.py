from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import LanguageProfile

DEFAULT_LANGUAGES: Dict[str, Dict[str, Any]] = {
    "javascript": {"image": "node:18-alpine", "invocation": "node {file}", "file_extension": "js"},
    "python": {"image": "python:3.9-alpine", "invocation": "python3 {file}", "file_extension": "py"},
    "cpp": {
        "image": "gcc:latest",
        "invocation": "g++ -o {dir}/a.out {file} && {dir}/a.out",
        "file_extension": "cpp",
    },
}


class Settings(BaseSettings):
    # ---- queue / broker ----
    broker_url: Optional[str] = None        # redis://host:6379/0; unset = in-process queue
    queue_name: str = "code-execution"
    queue_lease_s: float = 30.0           # a worker process silent this long loses its in-flight jobs
    worker_pool_size: int = 2
    embedded_workers: bool = True

    # ---- isolated runtime ----
    runtime: str = "docker"                 # docker | local
    docker_bin: str = "docker"
    artifacts_dir: Path = Path("temp")
    allow_network: bool = False
    use_cgroups: bool = False
    cgroup_base: Path = Path("/sys/fs/cgroup/collabrun")
    kill_grace_s: float = 2.0
    max_output_bytes: int = 64 * 1024

    # ---- results / persistence ----
    database_url: str = "sqlite:///./collabrun.db"
    result_ttl_s: int = 300
    sync_wait_s: float = 30.0
    gc_delivered_jobs: bool = True

    # ---- terminal sessions ----
    shell: str = "bash"
    session_grace_s: float = 2.0
    session_idle_timeout_s: int = 0

    # ---- api ----
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    log_level: str = "INFO"

    # ---- config files ----
    languages_file: Path = Path("conf/languages.yaml")
    languages: Dict[str, LanguageProfile] = {}

    model_config = SettingsConfigDict(env_prefix="COLLABRUN_", extra="ignore")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    return data if isinstance(data, dict) else {}


def build_profiles(table: Dict[str, Any]) -> Dict[str, LanguageProfile]:
    return {
        lang_id: LanguageProfile(id=lang_id, **(spec or {}))
        for lang_id, spec in table.items()
    }


def load_settings() -> Settings:
    # 0) env COLLABRUN_* first
    s = Settings()
    from_env = s.model_fields_set

    # 1) conf/sandbox.yaml (or COLLABRUN_CONF); env wins over the file
    data = _read_yaml(Path(os.environ.get("COLLABRUN_CONF", "conf/sandbox.yaml")))

    def pick(key: str, cast):
        if key in from_env or key not in data:
            return getattr(s, key)
        return None if data[key] is None else cast(data[key])

    s = s.model_copy(
        update={
            "broker_url": pick("broker_url", str),
            "queue_name": pick("queue_name", str),
            "queue_lease_s": pick("queue_lease_s", float),
            "worker_pool_size": pick("worker_pool_size", int),
            "embedded_workers": pick("embedded_workers", bool),
            "runtime": pick("runtime", str),
            "docker_bin": pick("docker_bin", str),
            "artifacts_dir": pick("artifacts_dir", Path),
            "allow_network": pick("allow_network", bool),
            "use_cgroups": pick("use_cgroups", bool),
            "cgroup_base": pick("cgroup_base", Path),
            "kill_grace_s": pick("kill_grace_s", float),
            "max_output_bytes": pick("max_output_bytes", int),
            "database_url": pick("database_url", str),
            "result_ttl_s": pick("result_ttl_s", int),
            "sync_wait_s": pick("sync_wait_s", float),
            "gc_delivered_jobs": pick("gc_delivered_jobs", bool),
            "shell": pick("shell", str),
            "session_grace_s": pick("session_grace_s", float),
            "session_idle_timeout_s": pick("session_idle_timeout_s", int),
            "cors_origins": pick("cors_origins", list),
            "log_level": pick("log_level", str),
            "languages_file": pick("languages_file", Path),
        }
    )

    # 2) language profile table; the closed set every admission is checked against
    table = _read_yaml(s.languages_file) or DEFAULT_LANGUAGES
    s = s.model_copy(update={"languages": build_profiles(table)})
    return s
