"""Application-wide exception hierarchy for the product scraper.

All custom exceptions subclass ``ScraperError``, enabling consistent error
handling and structured logging across the engine and the API layer.

Hierarchy::

    ScraperError
    ├── ValidationError          (bad or missing job input)
    ├── NotFoundError            (unknown job / recipe / artifact)
    ├── InvalidStateError        (illegal job state transition)
    ├── NetworkError             (transient, retried per item)
    │   └── RequestTimeoutError
    ├── JobTimeoutError          (job-level wall-clock budget exceeded)
    ├── ParseError               (extraction failure, per item)
    ├── RecipeError              (malformed or unresolvable recipe)
    ├── BrowserError             (headless browser unavailable / failed to launch)
    └── StorageError             (persistence failure)
"""

from __future__ import annotations


class ScraperError(Exception):
    """Base class for all product scraper exceptions.

    All application-specific exceptions inherit from this class so that
    callers can catch the entire hierarchy with a single ``except`` clause
    when needed.
    """


# ---------------------------------------------------------------------------
# Request / lifecycle exceptions
# ---------------------------------------------------------------------------


class ValidationError(ScraperError):
    """Raised when a job-init request is missing or carries malformed input.

    Args:
        message: Human-readable description of the problem.
        field: Name of the offending input field, when known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ScraperError):
    """Raised when a job, recipe, or stored artifact does not exist.

    Args:
        kind: What was looked up (``"job"``, ``"recipe"``, ``"result"`` ...).
        key: The identifier that was not found.
    """

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind.capitalize()} '{key}' not found")
        self.kind = kind
        self.key = key


class InvalidStateError(ScraperError):
    """Raised when an operation is not allowed in the job's current state.

    Cancelling a job that already reached a terminal state is the common
    case; the API reports it as a soft failure rather than a server error.

    Args:
        job_id: The job the operation targeted.
        status: The job's status at the time of the call.
        action: The attempted operation (e.g. ``"cancel"``).
    """

    def __init__(self, job_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} job '{job_id}' with status '{status}'")
        self.job_id = job_id
        self.status = status
        self.action = action


# ---------------------------------------------------------------------------
# Fetch exceptions
# ---------------------------------------------------------------------------


class NetworkError(ScraperError):
    """Raised for transient fetch failures (5xx, connection resets, 429).

    The scheduler retries these with exponential backoff before recording
    the item as skipped.

    Args:
        message: Description of the failure.
        url: The URL being fetched.
        status_code: HTTP status, when a response was received.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RequestTimeoutError(NetworkError):
    """Raised when a single fetch exceeds its per-request timeout."""


class JobTimeoutError(ScraperError):
    """Raised when a job exceeds its wall-clock budget.

    Args:
        job_id: The job that ran out of time.
        budget_seconds: The budget that was exceeded.
    """

    def __init__(self, job_id: str, budget_seconds: float) -> None:
        super().__init__(
            f"Job '{job_id}' exceeded its time budget of {budget_seconds:.0f}s"
        )
        self.job_id = job_id
        self.budget_seconds = budget_seconds


# ---------------------------------------------------------------------------
# Extraction / configuration exceptions
# ---------------------------------------------------------------------------


class ParseError(ScraperError):
    """Raised when a page yields no usable product data.

    Non-fatal: the item is recorded as skipped without retry.

    Args:
        message: Description of the failure.
        url: The page that could not be parsed.
    """

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class RecipeError(ScraperError):
    """Raised when a recipe is malformed or cannot be resolved.

    Args:
        message: Description of the failure.
        recipe: Name of the recipe (or the source file) involved.
    """

    def __init__(self, message: str, recipe: str | None = None) -> None:
        super().__init__(message)
        self.recipe = recipe


class BrowserError(ScraperError):
    """Raised when the headless browser cannot be started.

    Fatal to the job: every item would fail the same way.
    """


class StorageError(ScraperError):
    """Raised when job state or results cannot be persisted or read.

    Args:
        message: Description of the failure.
        operation: The storage operation that failed (e.g. ``"save_job"``).
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation
