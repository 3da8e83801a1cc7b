class ElectionError(Exception):
    status_code = 400
    default_message = "bad request"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(ElectionError):
    status_code = 404
    default_message = "Not found"


class AuthorizationError(ElectionError):
    status_code = 401
    default_message = "Unauthorized"


class ValidationError(ElectionError):
    default_message = "Invalid request"


class ElectionNotDeployed(ElectionError):
    default_message = "Election has not been deployed"


class DeploymentInProgress(ElectionError):
    status_code = 409
    default_message = "Election deployment already in progress"


class LedgerUnavailable(ElectionError):
    status_code = 503
    default_message = "Blockchain client unavailable"


class LedgerTimeout(ElectionError):
    status_code = 504
    default_message = "Transaction not confirmed in time"


class LedgerRejection(ElectionError):
    """A transaction or read the election contract refused.

    ``reason`` keeps the contract's own text so callers can narrow it down
    with :func:`classify_rejection`.
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class NotAValidVoter(LedgerRejection):
    default_message = "Not a valid voter"


class AlreadyVoted(LedgerRejection):
    default_message = "Vote has already been cast"


class ElectionNotEnded(LedgerRejection):
    default_message = "Election has not ended"


class BadRequest(LedgerRejection):
    default_message = "bad request"


REJECTION_REASONS: list[tuple[str, type[LedgerRejection]]] = [
    ("Has no right to vote", NotAValidVoter),
    ("Already voted", AlreadyVoted),
    ("Election end time has not passed", ElectionNotEnded),
]


def classify_rejection(reason: str) -> LedgerRejection:
    for needle, kind in REJECTION_REASONS:
        if needle in reason:
            return kind(reason, kind.default_message)
    return BadRequest(reason, BadRequest.default_message)


class GrantInterrupted(ElectionError):
    """A voting-rights grant spanning several atomic groups stopped part way.

    ``granted`` holds the addresses whose groups were confirmed before
    ``cause`` stopped the rest.
    """

    def __init__(self, cause: ElectionError, granted: list[str], tx_ids: list[str]) -> None:
        self.cause = cause
        self.granted = list(granted)
        self.tx_ids = list(tx_ids)
        self.status_code = cause.status_code
        super().__init__(cause.message)
