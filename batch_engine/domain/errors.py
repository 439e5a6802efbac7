class JobError(Exception):
    """Base exception for batch engine errors."""
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class AlreadyTerminalError(JobError):
    def __init__(self, job_id, current_status):
        self.job_id = job_id
        self.current_status = current_status
        super().__init__(f"Job {job_id} is already {current_status}")

# --- Attempt-level errors ---

class NonRetryableError(JobError):
    """Fails the job immediately, whatever attempts remain."""
    pass

class ConfigurationError(NonRetryableError):
    pass

class HandlerNotFoundError(ConfigurationError):
    def __init__(self, job_type, known=()):
        self.job_type = job_type
        self.known = sorted(known)
        super().__init__(f"No handler registered for job type '{job_type}'")

class MalformedPayloadError(NonRetryableError):
    pass

class UnknownOperationError(MalformedPayloadError):
    def __init__(self, job_type, operation, supported=()):
        self.operation = operation
        super().__init__(
            f"Unknown operation '{operation}' for job type '{job_type}'"
            + (f" (supported: {', '.join(supported)})" if supported else "")
        )

class FatalJobError(JobError):
    """Raised by handlers to abort the whole attempt."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable

class AttemptTimeoutError(FatalJobError):
    def __init__(self, timeout: float):
        super().__init__(f"Attempt exceeded timeout of {timeout}s", retryable=True)
        self.timeout = timeout

class JobCancelledError(JobError):
    """Raised by the batch processor when a cancellation is observed between chunks."""

    def __init__(self, outcome=None):
        super().__init__("Job cancelled")
        self.outcome = outcome

# --- Leases ---

class LeaseError(JobError):
    pass

class LeaseExpiredError(LeaseError):
    pass

class LeaseNotFoundError(LeaseError):
    pass
