"""
Error classes for Pipeline Pulse.
Every error carries a short code and a details dict so API handlers and
sync runs can log and report failures uniformly.

Hierarchy:
    HubError
    ├── APIError
    │   ├── APITimeoutError
    │   ├── APIRateLimitError
    │   └── APIAuthError
    ├── DataError
    │   ├── ConfigError
    │   ├── SchemaValidationError
    │   ├── DataFetchError
    │   └── DateRangeError
    └── SyncError
        └── SyncStepError
"""


class HubError(Exception):
    """Base exception for all Pipeline Pulse errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


# --- API Errors ---

class APIError(HubError):
    """Base class for errors returned by Close, Calendly, Typeform or Notion."""

    def __init__(self, message: str, code: str = "API_ERROR",
                 status_code: int = None, url: str = None, **kwargs):
        self.status_code = status_code
        self.url = url
        details = {"status_code": status_code, "url": url, **kwargs}
        super().__init__(message, code=code, details=details)


class APITimeoutError(APIError):
    """Request timed out."""

    def __init__(self, url: str, timeout: float):
        super().__init__(
            f"Request timed out after {timeout}s: {url}",
            code="API_TIMEOUT", url=url, timeout=timeout,
        )


class APIRateLimitError(APIError):
    """Rate limit still exceeded after waiting out Retry-After."""

    def __init__(self, url: str, retry_after: int = None):
        msg = f"Rate limit exceeded: {url}"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        super().__init__(
            msg, code="API_RATE_LIMIT", status_code=429, url=url,
            retry_after=retry_after,
        )


class APIAuthError(APIError):
    """Authentication or authorization failure."""

    def __init__(self, url: str, status_code: int = 401):
        super().__init__(
            f"Authentication failed: {url}",
            code="API_AUTH_FAILED", url=url, status_code=status_code,
        )


# --- Data Errors ---

class DataError(HubError):
    """Base class for data processing errors."""
    pass


class ConfigError(DataError):
    """Missing or invalid configuration (API keys, database URL)."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(
            message, code="CONFIG_ERROR", details={"setting": setting},
        )


class SchemaValidationError(DataError):
    """A source payload is missing a field the mapping depends on."""

    def __init__(self, message: str, field: str = None):
        super().__init__(
            message, code="SCHEMA_INVALID", details={"field": field},
        )


class DataFetchError(DataError):
    """Failed to read from or write to the database."""

    def __init__(self, message: str, source: str = None):
        super().__init__(
            message, code="DATA_FETCH_FAILED", details={"source": source},
        )


class DateRangeError(DataError):
    """Unparseable or inverted date range."""

    def __init__(self, message: str, value: str = None):
        super().__init__(
            message, code="INVALID_DATE_RANGE", details={"value": value},
        )


# --- Sync Errors ---

class SyncError(HubError):
    """Sync orchestration error."""
    pass


class SyncStepError(SyncError):
    """A specific sync step failed."""

    def __init__(self, step_name: str, cause: Exception = None):
        msg = f"Sync step '{step_name}' failed"
        if cause:
            msg += f": {cause}"
        super().__init__(
            msg, code="SYNC_STEP_FAILED", details={"step": step_name},
        )
