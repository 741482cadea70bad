class CollabRunError(Exception):
    pass


class UnsupportedLanguage(CollabRunError):
    def __init__(self, language: str):
        super().__init__(f"language '{language}' is not supported")
        self.language = language


class SpawnFailure(CollabRunError):
    """The isolated runtime could not start the program (infrastructure fault)."""


class BrokerUnavailable(CollabRunError):
    """Admission could not reach the job queue; nothing was created."""


class JobNotFound(CollabRunError, KeyError):
    def __init__(self, job_id: str):
        super().__init__(f"job_not_found:{job_id}")
        self.job_id = job_id

    def __str__(self) -> str:
        return self.args[0]


class SessionNotFound(CollabRunError, KeyError):
    def __init__(self, session_id: str):
        super().__init__(f"session_not_found:{session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class ResultUnavailable(CollabRunError):
    """No outcome arrived in time, or the job was withdrawn before it ran."""

    def __init__(self, job_id: str):
        super().__init__(f"result_unavailable:{job_id}")
        self.job_id = job_id
