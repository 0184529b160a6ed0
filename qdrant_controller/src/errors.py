from __future__ import annotations

import httpx
from kubernetes.client.exceptions import ApiException


class SpecValidationError(ValueError):
    """Raised when a desired spec can never converge until the user edits it."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class QdrantError(RuntimeError):
    """A data-plane call against a Qdrant cluster failed or returned an error payload."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PollTimeout(TimeoutError):
    def __init__(self, description: str, attempts: int, interval: float) -> None:
        super().__init__(
            f"{description} not reached after {attempts} attempt(s) every {interval:g}s"
        )
        self.description = description
        self.attempts = attempts
        self.interval = interval


# Failures that are expected to clear on their own. Reconcilers absorb these
# into the retry queue; anything else is re-queued *and* re-raised.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ApiException,
    httpx.HTTPError,
    QdrantError,
    TimeoutError,
)


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409
