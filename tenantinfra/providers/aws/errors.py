from __future__ import annotations

import asyncio

from botocore.exceptions import (
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


_THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "RequestThrottled",
    "RequestThrottledException",
    "LimitExceededException",
}
_SERVICE_CODES = {
    "InternalFailure",
    "InternalError",
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "RegionDisabledException",
}
_ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "ExpiredToken",
    "ExpiredTokenException",
    "MalformedPolicyDocument",
}


def error_code(exc: BaseException) -> str | None:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message") or "")
    return str(exc)


def http_status(exc: BaseException) -> int | None:
    if isinstance(exc, ClientError):
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return status if isinstance(status, int) else None
    return None


def is_transient(exc: BaseException) -> bool:
    # Throttling, 5xx and network-level failures are worth another attempt.
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(
        exc,
        (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, BotoConnectionError),
    ):
        return True
    if isinstance(exc, ClientError):
        code = error_code(exc)
        if code in _THROTTLING_CODES or code in _SERVICE_CODES:
            return True
        status = http_status(exc)
        return isinstance(status, int) and status >= 500
    # Remaining BotoCoreErrors (bad params, missing credentials) are deterministic.
    return False


def is_access_denied(exc: BaseException) -> bool:
    # Only an answer from the service counts; local credential problems never do.
    if not isinstance(exc, ClientError):
        return False
    return error_code(exc) in _ACCESS_DENIED_CODES or http_status(exc) in {401, 403}


def is_stack_missing(exc: BaseException) -> bool:
    # CloudFormation reports unknown stacks as a ValidationError with "does not exist".
    return (
        isinstance(exc, ClientError)
        and error_code(exc) == "ValidationError"
        and "does not exist" in error_message(exc)
    )