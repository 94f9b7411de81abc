"""Error taxonomy shared across the daemon.

Execution failures (budget, turns, timeout, process errors, cancellation)
are not exceptions: they are reported as ``ExecutionStatus`` values on the
``ExecutionResult`` so they can be routed like any other outcome.
"""


class DemonError(Exception):
    """Base class for demon errors."""


class ValidationError(DemonError):
    """A job or config definition is malformed or self-contradictory."""


class DuplicateId(ValidationError):
    """A job with the same id already exists."""

    def __init__(self, job_id: str):
        super().__init__(f"Job with ID '{job_id}' already exists")
        self.job_id = job_id


class JobNotFound(DemonError):
    """No job with the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id


class PersistenceError(DemonError):
    """Durable job/config state could not be read or written."""


class AlreadyRunning(DemonError):
    """The job is already executing. Expected under concurrency; callers skip."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' is already running")
        self.job_id = job_id


class DaemonAlreadyRunning(AlreadyRunning):
    """Another daemon instance holds the liveness marker."""

    def __init__(self, pid: int):
        DemonError.__init__(self, f"Demon is already running (PID: {pid})")
        self.job_id = ""
        self.pid = pid


class GatewayUnavailable(DemonError):
    """Chat delivery requested but the gateway is disabled or has no token."""


class ControlError(DemonError):
    """A control-channel request to the running daemon failed."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code
