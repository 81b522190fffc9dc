from __future__ import annotations

from enum import Enum
from typing import Sequence


class CharforgeError(RuntimeError):
    """Base error for character generation failures."""


class GatewayErrorKind(str, Enum):
    AUTH = "auth"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    NETWORK_UNAVAILABLE = "network_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class GatewayError(CharforgeError):
    """Provider call failed (network, auth, rate limit, timeout...)."""

    kind: GatewayErrorKind = GatewayErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class AuthError(GatewayError):
    kind = GatewayErrorKind.AUTH


class NotFoundError(GatewayError):
    kind = GatewayErrorKind.NOT_FOUND


class RateLimitedError(GatewayError):
    kind = GatewayErrorKind.RATE_LIMITED


class NetworkUnavailableError(GatewayError):
    kind = GatewayErrorKind.NETWORK_UNAVAILABLE


class MalformedResponseError(GatewayError):
    kind = GatewayErrorKind.MALFORMED_RESPONSE


class GatewayTimeoutError(GatewayError):
    kind = GatewayErrorKind.TIMEOUT


class UnknownGatewayError(GatewayError):
    kind = GatewayErrorKind.UNKNOWN


class ParseError(CharforgeError):
    """LLM text could not be turned into structured data after every repair attempt."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class PreconditionError(CharforgeError):
    """Stage invoked before its dependency produced the required state."""

    def __init__(self, message: str, *, stage: int | None = None, field: str | None = None):
        super().__init__(message)
        self.stage = stage
        self.field = field


class StaleResultError(CharforgeError):
    """A newer stage invocation started while this one was awaiting the provider."""

    def __init__(self, message: str, *, stage: int):
        super().__init__(message)
        self.stage = stage


class IllegalTransitionError(CharforgeError):
    """Forbidden stage status transition (programming error)."""


class ManifestValidationError(CharforgeError):
    """Archive manifest is missing required fields."""

    def __init__(self, errors: Sequence[str]):
        super().__init__("; ".join(errors) or "invalid manifest")
        self.errors = list(errors)
