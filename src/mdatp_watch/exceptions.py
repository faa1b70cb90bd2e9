"""Custom exception hierarchy for mdatp-watch.

All mdatp-watch exceptions inherit from MdatpWatchError, allowing callers
to catch broad or specific errors:

    try:
        await watcher.run()
    except EncoderError as e:
        print(f"Output broke: {e}")
    except MdatpWatchError as e:
        print(f"mdatp-watch error: {e}")
"""

from __future__ import annotations


class MdatpWatchError(Exception):
    """Base exception for all mdatp-watch errors."""


class ConfigError(MdatpWatchError):
    """Raised when configuration is invalid or missing."""


class AlertSourceError(MdatpWatchError):
    """Raised when the alert source cannot deliver a page of alerts."""


class AlertTransportError(AlertSourceError):
    """Raised when the HTTP round-trip itself fails (DNS, TLS, timeout)."""


class AuthError(AlertSourceError):
    """Raised when an OAuth access token cannot be obtained."""


class AlertAPIError(AlertSourceError):
    """Raised when the API answers with a structured (or garbled) error body."""

    def __init__(
        self, status: int, code: str = "", message: str = "", target: str = ""
    ) -> None:
        self.status = status
        self.code = code
        self.message = message
        self.target = target
        detail = f"{code}: {message}" if code else message
        super().__init__(f"HTTP {status} {detail}".rstrip())

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "target": self.target,
            }
        }


class EncoderError(MdatpWatchError):
    """Raised when an alert cannot be written to the output sink."""
