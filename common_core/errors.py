from __future__ import annotations


class HelpdeskError(Exception):
    """Base class for errors raised by the ticket engine.

    ``code`` is a stable machine-readable tag; the message is meant for humans.
    """

    status_code = 500

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        self.message = message or code
        super().__init__(self.message)


class ValidationError(HelpdeskError):
    status_code = 400


class TransitionPermissionError(HelpdeskError):
    status_code = 403


class NotFoundError(HelpdeskError):
    status_code = 404


class TransientDeliveryError(HelpdeskError):
    status_code = 502


class ConfigurationError(HelpdeskError):
    status_code = 500
