"""Error taxonomy and the provider-call classification boundary."""

from __future__ import annotations

from enum import Enum

import openai


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    SERVER_ERROR = "server_error"
    INVALID_CREDENTIAL = "invalid_credential"
    NETWORK_ERROR = "network_error"
    MALFORMED_VECTOR = "malformed_vector"
    EMPTY_RETRIEVAL = "empty_retrieval"
    SUMMARY_UNAVAILABLE = "summary_unavailable"
    MODELS_EXHAUSTED = "models_exhausted"
    UNKNOWN = "unknown"


class PageChatError(RuntimeError):
    """Base class for engine errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    user_message = "Something went wrong while answering. Please try again."
    retryable = True


class ProviderError(PageChatError):
    """A failed chat or embedding provider call, classified once."""


class RateLimitedError(ProviderError):
    kind = ErrorKind.RATE_LIMITED
    user_message = "Model rate limited. Switch to continue."


class ServiceUnavailableError(ProviderError):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    user_message = (
        "The model service is temporarily unavailable. "
        "This is usually brief, please wait 10-30 seconds and try again."
    )


class ServerError(ProviderError):
    kind = ErrorKind.SERVER_ERROR
    user_message = "The model service encountered a server error. Please try again shortly."


class InvalidCredentialError(ProviderError):
    kind = ErrorKind.INVALID_CREDENTIAL
    user_message = "Your API key appears to be invalid. Please replace it to continue."
    retryable = False


class NetworkError(ProviderError):
    kind = ErrorKind.NETWORK_ERROR
    user_message = "Could not reach the model service. Please check your connection."


class MalformedVectorError(PageChatError):
    kind = ErrorKind.MALFORMED_VECTOR


class DocumentNotLoadedError(PageChatError):
    """Raised when a question arrives before any document was loaded."""

    user_message = "Page content not loaded yet. Please wait."


class SessionBusyError(PageChatError):
    """Raised when a second question is submitted while one is in flight."""

    user_message = "Please wait for the current answer to finish."


MODELS_EXHAUSTED_MESSAGE = (
    "All available models have reached their rate limits. "
    "Please wait 60 seconds before sending another message."
)


_STATUS_ERRORS: dict[int, type[ProviderError]] = {
    429: RateLimitedError,
    503: ServiceUnavailableError,
    500: ServerError,
    502: ServerError,
    504: ServerError,
    401: InvalidCredentialError,
    403: InvalidCredentialError,
}


def classify_provider_error(exc: BaseException) -> ProviderError:
    """Map a raw provider exception to the error taxonomy.

    Classification uses exception types and HTTP status codes only. Already
    classified errors pass through unchanged.
    """

    if isinstance(exc, ProviderError):
        return exc

    error_cls: type[ProviderError] = ProviderError
    if isinstance(exc, openai.RateLimitError):
        error_cls = RateLimitedError
    elif isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        error_cls = InvalidCredentialError
    elif isinstance(exc, (openai.APIConnectionError, ConnectionError, TimeoutError)):
        error_cls = NetworkError
    else:
        status = _status_code(exc)
        if status is not None:
            error_cls = _STATUS_ERRORS.get(status, ProviderError)
            if error_cls is ProviderError and status >= 500:
                error_cls = ServerError

    error = error_cls(str(exc) or exc.__class__.__name__)
    error.__cause__ = exc
    return error


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None
