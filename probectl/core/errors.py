"""Domain-specific errors for probectl."""


class ProbectlError(Exception):
    """Base error for probectl."""


class ConfigLoadError(ProbectlError):
    """Raised when a configuration file cannot be read."""


class ConfigValidationError(ProbectlError):
    """Raised when configuration does not conform to schema or semantics."""


class InvalidConfiguration(ProbectlError):
    """Raised when the target device identity is unusable. Fatal to a session."""


class DecodeError(ProbectlError):
    """Base decode error."""


class MalformedFrame(DecodeError):
    """Raised when a notification payload does not match its fixed frame layout."""


class TransportError(ProbectlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on discovery or BLE connect failures."""


class TransportSubscribeError(TransportError):
    """Raised when subscribing to a notification characteristic fails."""


class TransportTimeoutError(TransportError):
    """Raised when connect/subscribe does not complete in time."""


class TransportDisconnectedError(TransportError):
    """Raised when the device drops the link."""
