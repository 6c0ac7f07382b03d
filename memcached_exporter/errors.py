#!/usr/bin/env python3
"""
Exporter errors

Exceptions raised while talking to a memcached target. Only ConnectError and
fatal ProtocolErrors affect the ``memcached_up`` metric; everything else is
absorbed where it happens.
"""


class ExporterError(Exception):
    """Base class for all exporter errors"""


class ConfigError(ExporterError):
    """Invalid or unusable configuration"""


class ConnectError(ExporterError):
    """Dial, unix socket or TLS handshake failure"""


class ProtocolError(ExporterError):
    """A stats command did not complete normally"""

    SERVER_ERROR = 'server_error'
    TIMEOUT = 'timeout'

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def fatal(self) -> bool:
        # The connection can no longer be trusted after a timeout or early close
        return self.kind == self.TIMEOUT


class ParseError(ExporterError):
    """Malformed reply line or a value that could not be coerced"""
