"""Classification of provider and system errors into retry decisions."""

import enum
from dataclasses import dataclass
from typing import Optional

import httpx

from songbroker.services.exceptions import (
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderResponseError,
)


class ErrorCategory(str, enum.Enum):
    """Failure categories recorded on tasks and reported to callers."""

    PROVIDER_QUOTA = "provider_quota"
    RATE_LIMIT = "rate_limit"
    PROVIDER_SERVER_ERROR = "provider_server_error"
    AUTH_ERROR = "auth_error"
    VALIDATION_ERROR = "validation_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    NOT_FOUND_IN_PROVIDER = "not_found_in_provider"
    PROVIDER_FAILURE = "provider_failure"  # Provider reported the task itself as failed
    SYSTEM_ERROR = "system_error"
    UNKNOWN_ERROR = "unknown_error"


QUOTA_EXCEEDED_CODE = 400015

NETWORK_KEYWORDS: tuple[str, ...] = (
    "connection",
    "timeout",
    "timed out",
    "network",
    "dns",
    "host",
    "curl",
    "socket",
    "ssl",
    "certificate",
    "unreachable",
    "refused",
)


@dataclass(frozen=True)
class ErrorClassification:
    """Retry decision and user-facing description of a failure."""

    category: ErrorCategory
    retryable: bool
    user_message: str
    retry_after_seconds: Optional[int] = None
    status_code: Optional[int] = None

    @property
    def code(self) -> str:
        """Stable machine-readable code, e.g. ``ERR_RATE_LIMIT``."""
        return f"ERR_{self.category.value.upper()}"

    @classmethod
    def for_category(cls, category: ErrorCategory) -> "ErrorClassification":
        return _CATEGORY_DEFAULTS[category]


_CATEGORY_DEFAULTS: dict[ErrorCategory, ErrorClassification] = {
    ErrorCategory.PROVIDER_QUOTA: ErrorClassification(
        ErrorCategory.PROVIDER_QUOTA,
        True,
        "The music service is at capacity. Please try again in a few minutes.",
        300,
    ),
    ErrorCategory.RATE_LIMIT: ErrorClassification(
        ErrorCategory.RATE_LIMIT,
        True,
        "Too many requests right now. Please wait a moment and try again.",
        120,
    ),
    ErrorCategory.PROVIDER_SERVER_ERROR: ErrorClassification(
        ErrorCategory.PROVIDER_SERVER_ERROR,
        True,
        "The music service is having trouble. Please try again shortly.",
        180,
    ),
    ErrorCategory.AUTH_ERROR: ErrorClassification(
        ErrorCategory.AUTH_ERROR,
        False,
        "The music service is temporarily unavailable. Our team has been notified.",
    ),
    ErrorCategory.VALIDATION_ERROR: ErrorClassification(
        ErrorCategory.VALIDATION_ERROR,
        False,
        "The generation request was rejected. Please adjust it and try again.",
    ),
    ErrorCategory.NETWORK_ERROR: ErrorClassification(
        ErrorCategory.NETWORK_ERROR,
        True,
        "We could not reach the music service. Please check back shortly.",
        30,
    ),
    ErrorCategory.TIMEOUT: ErrorClassification(
        ErrorCategory.TIMEOUT,
        False,
        "Generation took too long and was stopped. Please try again.",
    ),
    ErrorCategory.NOT_FOUND_IN_PROVIDER: ErrorClassification(
        ErrorCategory.NOT_FOUND_IN_PROVIDER,
        False,
        "This generation could not be found at the music service.",
    ),
    ErrorCategory.PROVIDER_FAILURE: ErrorClassification(
        ErrorCategory.PROVIDER_FAILURE,
        False,
        "Generation failed. Please try again with different input.",
    ),
    ErrorCategory.SYSTEM_ERROR: ErrorClassification(
        ErrorCategory.SYSTEM_ERROR,
        True,
        "Something went wrong on our side. Please try again.",
        60,
    ),
    ErrorCategory.UNKNOWN_ERROR: ErrorClassification(
        ErrorCategory.UNKNOWN_ERROR,
        True,
        "An unexpected error occurred. Please try again.",
        60,
    ),
}

# (category, retry_after) per provider HTTP status
_HTTP_STATUS_TABLE: dict[int, tuple[ErrorCategory, Optional[int]]] = {
    400: (ErrorCategory.VALIDATION_ERROR, None),
    401: (ErrorCategory.AUTH_ERROR, None),
    403: (ErrorCategory.AUTH_ERROR, None),
    404: (ErrorCategory.PROVIDER_SERVER_ERROR, 120),
    422: (ErrorCategory.VALIDATION_ERROR, None),
    429: (ErrorCategory.RATE_LIMIT, 120),
    500: (ErrorCategory.PROVIDER_SERVER_ERROR, 180),
    502: (ErrorCategory.PROVIDER_SERVER_ERROR, 180),
    503: (ErrorCategory.PROVIDER_SERVER_ERROR, 240),
    504: (ErrorCategory.PROVIDER_SERVER_ERROR, 120),
}


def classify_status_code(status_code: int) -> ErrorClassification:
    """Classify a provider HTTP (or provider-specific) status code."""
    if status_code == QUOTA_EXCEEDED_CODE:
        return _CATEGORY_DEFAULTS[ErrorCategory.PROVIDER_QUOTA]

    category, retry_after = _HTTP_STATUS_TABLE.get(
        status_code, (ErrorCategory.UNKNOWN_ERROR, 60)
    )
    base = _CATEGORY_DEFAULTS[category]
    return ErrorClassification(
        category=base.category,
        retryable=base.retryable,
        user_message=base.user_message,
        retry_after_seconds=retry_after,
        status_code=status_code,
    )


def is_network_message(message: str) -> bool:
    lowered = message.lower()
    return any(keyword in lowered for keyword in NETWORK_KEYWORDS)


def classify(error: BaseException) -> ErrorClassification:
    """
    Decide whether an error is worth retrying and how to describe it.

    Provider HTTP errors are classified by their provider code first, then by
    HTTP status. Everything else is a network error if it is a transport
    failure or its message looks like one, otherwise a system error.
    """
    if isinstance(error, ProviderHTTPError):
        if error.provider_code is not None:
            classification = classify_status_code(error.provider_code)
            if classification.category != ErrorCategory.UNKNOWN_ERROR:
                return classification
        return classify_status_code(error.status_code)

    if isinstance(error, httpx.HTTPStatusError):
        return classify_status_code(error.response.status_code)

    if isinstance(
        error,
        (ProviderConnectionError, httpx.TransportError, ConnectionError, TimeoutError),
    ):
        return _CATEGORY_DEFAULTS[ErrorCategory.NETWORK_ERROR]

    if isinstance(error, ProviderResponseError):
        return _CATEGORY_DEFAULTS[ErrorCategory.PROVIDER_SERVER_ERROR]

    if is_network_message(str(error)):
        return _CATEGORY_DEFAULTS[ErrorCategory.NETWORK_ERROR]

    return _CATEGORY_DEFAULTS[ErrorCategory.SYSTEM_ERROR]
