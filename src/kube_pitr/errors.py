from __future__ import annotations


class PITRError(RuntimeError):
    """Base class for point-in-time recovery failures."""

    retryable = False
    reason = "PITRError"


class LineageNotFoundError(PITRError):
    """Raised when no backup chain covers the requested recovery time."""

    reason = "LineageNotFound"

    def __init__(self, *, source_cluster: str, component: str, target_time: str, detail: str) -> None:
        super().__init__(
            f"no backup lineage for {source_cluster}/{component} covers {target_time}: {detail}"
        )
        self.source_cluster = source_cluster
        self.component = component
        self.target_time = target_time
        self.detail = detail


class InvalidRestoreTimeError(PITRError):
    """Raised when the restore-from-time annotation is not an RFC 3339 timestamp."""

    reason = "InvalidRestoreTime"

    def __init__(self, *, namespace: str, cluster: str, value: str) -> None:
        super().__init__(
            f"cluster {namespace}/{cluster} requests restore to '{value}', which is not an RFC 3339 timestamp"
        )
        self.namespace = namespace
        self.cluster = cluster
        self.value = value


class TemplateError(PITRError):
    """Raised when the workload template cannot host the restore steps."""

    reason = "TemplateError"


class JobFailedError(PITRError):
    reason = "JobFailed"

    def __init__(self, *, namespace: str, job_name: str, message: str = "") -> None:
        detail = message.strip() or "restore job reported Failed"
        super().__init__(f"restore job {namespace}/{job_name} failed: {detail}")
        self.namespace = namespace
        self.job_name = job_name


class TransientAPIError(PITRError):
    """Raised for Kubernetes API failures that the caller should retry with backoff."""

    retryable = True
    reason = "TransientAPIError"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ConflictError(TransientAPIError):
    """Raised when an optimistic-concurrency write loses against a newer resource version."""

    reason = "Conflict"


class AlreadyExistsError(TransientAPIError):
    reason = "AlreadyExists"
