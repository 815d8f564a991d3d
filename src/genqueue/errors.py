class GenQueueError(Exception):
    pass


class ValidationError(GenQueueError):
    """Malformed create request or job input. Never retried."""


class InvalidTransition(GenQueueError):
    def __init__(self, job_id: str, status: str, target: str) -> None:
        super().__init__(f"job {job_id} cannot move from {status} to {target}")
        self.job_id = job_id
        self.status = status
        self.target = target


class NotFound(GenQueueError):
    pass


class RateLimitExceeded(GenQueueError):
    pass


class InsufficientBalance(GenQueueError):
    def __init__(self, account_id: str, balance: int, required: int) -> None:
        super().__init__(f"insufficient credits: balance {balance}, required {required}")
        self.account_id = account_id
        self.balance = balance
        self.required = required


class ProviderError(GenQueueError):
    pass


class ProviderTimeoutError(ProviderError):
    pass


class UploadError(GenQueueError):
    pass


class JobCancelled(GenQueueError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} was cancelled")
        self.job_id = job_id
