from enum import Enum


class ErrorKind(str, Enum):
    CLIENT_INPUT = "client_input"
    UNAUTHORIZED = "unauthorized"
    POLICY_VIOLATION = "policy_violation"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    EXECUTION_FAILURE = "execution_failure"
    UNEXPECTED_FAILURE = "unexpected_failure"

    @property
    def status(self) -> int:
        return _STATUS[self]


_STATUS = {
    ErrorKind.CLIENT_INPUT: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.POLICY_VIOLATION: 403,
    ErrorKind.METHOD_NOT_ALLOWED: 405,
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.EXECUTION_FAILURE: 500,
    ErrorKind.UNEXPECTED_FAILURE: 500,
}


class ConfigError(Exception):
    """Raised at startup when the environment describes an unusable gateway."""


class GatewayError(Exception):
    kind = ErrorKind.UNEXPECTED_FAILURE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status(self) -> int:
        return self.kind.status


class ClientInputError(GatewayError):
    kind = ErrorKind.CLIENT_INPUT


class Unauthorized(GatewayError):
    kind = ErrorKind.UNAUTHORIZED


class PolicyViolation(GatewayError):
    kind = ErrorKind.POLICY_VIOLATION


class MethodNotAllowed(GatewayError):
    kind = ErrorKind.METHOD_NOT_ALLOWED


class PayloadTooLarge(GatewayError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class ExecutionFailure(GatewayError):
    kind = ErrorKind.EXECUTION_FAILURE


def deepest_message(exc: BaseException) -> str:
    """Message of the innermost exception in the ``__cause__`` chain."""
    seen = set()
    while exc.__cause__ is not None and id(exc) not in seen:
        seen.add(id(exc))
        exc = exc.__cause__
    # mysql.connector errors carry the server text in .msg
    msg = getattr(exc, "msg", None)
    if isinstance(msg, str) and msg:
        return msg
    text = str(exc)
    return text or exc.__class__.__name__
