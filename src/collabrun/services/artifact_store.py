import shutil
from pathlib import Path


class ArtifactStore:
    """
    Ephemeral source files, one directory per job:
      <artifacts_dir>/<job_id>/code_<job_id>.<ext>
    Jobs never share a directory, so concurrent workers need no locking here.
    """

    def __init__(self, root: Path):
        self.root = root if root.is_absolute() else root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job_id: str) -> Path:
        return self.root / job_id

    def write_source(self, job_id: str, extension: str, code: str) -> Path:
        wd = self.job_dir(job_id)
        wd.mkdir(parents=True, exist_ok=True)
        path = wd / f"code_{job_id}.{extension}"
        path.write_text(code, encoding="utf-8")
        return path

    def remove(self, job_id: str) -> None:
        wd = self.job_dir(job_id)
        if wd.exists():
            shutil.rmtree(wd)

    def exists(self, job_id: str) -> bool:
        return self.job_dir(job_id).exists()
