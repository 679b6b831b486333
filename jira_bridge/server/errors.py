"""Bridge exception hierarchy and status-code extraction."""

from __future__ import annotations

from http import HTTPStatus


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConfigError(BridgeError):
    """Raised when settings cannot be parsed."""


class NotFoundError(BridgeError):
    """Raised when a registry or store lookup misses."""


class ConflictError(BridgeError):
    """Raised when an optimistic-concurrency write loses a race."""


class LicensingError(BridgeError):
    """Raised when multiple instances are installed without the capability."""


class InstanceTypeMismatchError(BridgeError):
    """Raised when an instance record does not have the expected type."""


class InvalidInputError(BridgeError):
    """Raised when user-supplied input cannot be acted on."""


class AmbiguousInputError(InvalidInputError):
    """Raised when user input matched zero or several candidates."""

    def __init__(self, message: str, candidates: list[str] | None = None) -> None:
        super().__init__(message)
        self.candidates = list(candidates or [])


class ManualCreateRequiredError(InvalidInputError):
    """Raised when an issue must be created by hand through ``create_url``."""

    def __init__(self, message: str, create_url: str) -> None:
        super().__init__(message)
        self.create_url = create_url


class RESTError(BridgeError):
    """Normalized upstream failure carrying an HTTP-like status code."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransportError(RESTError):
    """Network or decode failure with no usable upstream status."""

    def __init__(self, message: str) -> None:
        super().__init__(message, HTTPStatus.INTERNAL_SERVER_ERROR)


class AttachmentUploadError(BridgeError):
    """Raised when a host file could not be attached upstream."""

    def __init__(self, message: str, file_name: str = "", mime_type: str = "") -> None:
        super().__init__(message)
        self.file_name = file_name
        self.mime_type = mime_type


def status_code(exc: BaseException | None) -> int:
    """200 for no error, the error's own status when it has one, 500 otherwise."""

    if exc is None:
        return HTTPStatus.OK
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return int(code)
    return HTTPStatus.INTERNAL_SERVER_ERROR
