"""
Retry helpers shared by the Bedrock clients.
"""

import random

from botocore.exceptions import (ClientError, ConnectionClosedError, ConnectTimeoutError, EndpointConnectionError,
                                 ReadTimeoutError)

TRANSIENT_ERROR_CODES = {
    'ThrottlingException',
    'TooManyRequestsException',
    'ServiceUnavailableException',
    'ServiceUnavailable',
    'InternalServerException',
    'ModelNotReadyException',
    'RequestTimeout',
    'RequestTimeoutException',
}

MAX_BACKOFF_SECONDS = 8.0


def is_transient_error(error: Exception) -> bool:
    """Return True for network and throttling failures worth retrying.

    Validation, access and malformed-request errors return False.
    """
    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
        return True
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
        return code in TRANSIENT_ERROR_CODES
    return isinstance(error, (ConnectionError, TimeoutError))


def backoff_delay(retry_delay: float, attempt: int) -> float:
    """Exponential backoff with jitter, capped."""
    return min(MAX_BACKOFF_SECONDS, retry_delay * (2**attempt)) + random.uniform(0, retry_delay)
