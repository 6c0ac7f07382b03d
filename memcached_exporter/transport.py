#!/usr/bin/env python3
"""
Transport

Short-lived stream connections to a memcached server. A single deadline is
fixed when the connection is opened and bounds the connect as well as every
later read and write, so a server that accepts but never answers cannot hold
a scrape longer than the configured timeout.
"""

import asyncio
import logging
import ssl
from typing import Optional, Tuple

from memcached_exporter.errors import ConnectError

DEFAULT_PORT = 11211
# TLS server name for unix socket addresses, which carry no host
UNIX_SERVER_NAME = 'localhost'

logger = logging.getLogger(__name__)


def parse_address(address: str) -> Tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into host and port"""
    if address.startswith('['):
        host, _, rest = address[1:].partition(']')
        port = rest[1:] if rest.startswith(':') else ''
    elif address.count(':') == 1:
        host, port = address.rsplit(':', 1)
    else:
        # bare hostname or unbracketed IPv6 literal
        host, port = address, ''

    if not host:
        raise ValueError(f"Missing host in address '{address}'")
    if not port:
        return host, DEFAULT_PORT
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"Invalid port in address '{address}'") from None


class Connection:
    """Stream pair sharing one deadline on the event loop clock"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 deadline: float, address: str):
        self.reader = reader
        self.writer = writer
        self.deadline = deadline
        self.address = address
        self._closed = False

    def remaining(self) -> float:
        """Seconds left before the deadline"""
        return self.deadline - asyncio.get_running_loop().time()

    def _budget(self) -> float:
        remaining = self.remaining()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        return remaining

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    async def write_line(self, line: str):
        """Send one command terminated by CRLF"""
        self.writer.write(f"{line}\r\n".encode('utf-8'))
        await asyncio.wait_for(self.writer.drain(), timeout=self._budget())

    async def read_line(self) -> bytes:
        """Read one raw line; an empty result means the peer closed the stream"""
        return await asyncio.wait_for(self.reader.readline(), timeout=self._budget())

    async def close(self):
        """Close the stream; safe to call more than once"""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=max(self.remaining(), 0.1))
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Error while closing connection to {self.address}: {e}")


async def open_connection(address: str, timeout: float,
                          ssl_context: Optional[ssl.SSLContext] = None,
                          server_name: Optional[str] = None) -> Connection:
    """Connect to a memcached server

    Args:
        address: ``host:port``, ``[v6]:port``, bare host or an absolute unix socket path
        timeout: overall deadline in seconds for the connection's lifetime
        ssl_context: wrap the stream with TLS when given
        server_name: name used for TLS certificate verification

    Raises:
        ConnectError: the target could not be reached or the TLS handshake failed
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    tls_kwargs = {}
    if ssl_context is not None:
        tls_kwargs = {'ssl': ssl_context, 'server_hostname': server_name}

    try:
        if address.startswith('/'):
            if ssl_context is not None and not server_name:
                tls_kwargs['server_hostname'] = UNIX_SERVER_NAME
            coro = asyncio.open_unix_connection(address, **tls_kwargs)
        else:
            host, port = parse_address(address)
            if ssl_context is not None and not server_name:
                tls_kwargs['server_hostname'] = host
            coro = asyncio.open_connection(host, port, **tls_kwargs)
        reader, writer = await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        raise ConnectError(f"Timed out connecting to {address} after {timeout}s") from None
    except (OSError, ValueError) as e:
        # ssl.SSLError is an OSError
        raise ConnectError(f"Failed to connect to {address}: {e}") from e

    return Connection(reader, writer, deadline, address)
