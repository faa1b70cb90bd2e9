"""mdatp-watch — tail Microsoft Defender ATP alerts as a JSON stream."""

__version__ = "0.1.0"

from .exceptions import (
    AlertAPIError,
    AlertSourceError,
    AlertTransportError,
    AuthError,
    ConfigError,
    EncoderError,
    MdatpWatchError,
)

__all__ = [
    "__version__",
    "MdatpWatchError",
    "ConfigError",
    "AlertSourceError",
    "AlertTransportError",
    "AlertAPIError",
    "AuthError",
    "EncoderError",
]
