#!/usr/bin/env python3
"""
Memcached stats client

Speaks the request/response subset of the memcached text protocol that
returns diagnostic statistics. Commands are issued one at a time over a
single Connection; there is no pipelining.
"""

import asyncio
import logging
from typing import List

from memcached_exporter.errors import ProtocolError
from memcached_exporter.transport import Connection

END_LINE = 'END'
ERROR_PREFIXES = ('ERROR', 'CLIENT_ERROR', 'SERVER_ERROR')


class MemcachedClient:
    """Stats client bound to one Connection for the duration of a scrape"""

    def __init__(self, connection: Connection):
        self.connection = connection
        self.logger = logging.getLogger(__name__)

    async def query(self, command: str) -> List[str]:
        """Send a command and return the reply lines before the END terminator

        Raises:
            ProtocolError: SERVER_ERROR when the server rejected the command,
                TIMEOUT when the deadline passed or the stream was closed
        """
        try:
            await self.connection.write_line(command)

            lines = []
            while True:
                data = await self.connection.read_line()
                if not data:
                    raise ProtocolError(ProtocolError.TIMEOUT,
                                        f"Connection closed while waiting for reply to '{command}'")
                line = data.decode('utf-8', errors='replace').rstrip('\r\n')
                if line == END_LINE:
                    return lines
                if line.startswith(ERROR_PREFIXES):
                    raise ProtocolError(ProtocolError.SERVER_ERROR,
                                        f"Server rejected '{command}': {line}")
                lines.append(line)

        except asyncio.TimeoutError:
            raise ProtocolError(ProtocolError.TIMEOUT,
                                f"Timed out waiting for reply to '{command}'") from None
        except ValueError as e:
            # StreamReader.readline raises ValueError when a line overruns its buffer
            raise ProtocolError(ProtocolError.TIMEOUT, f"Unreadable reply to '{command}': {e}") from e
        except OSError as e:
            raise ProtocolError(ProtocolError.TIMEOUT,
                                f"Connection failed during '{command}': {e}") from e

    async def stats(self) -> List[str]:
        """General statistics"""
        return await self.query('stats')

    async def stats_settings(self) -> List[str]:
        return await self.query('stats settings')

    async def stats_items(self) -> List[str]:
        """Per slab class item statistics"""
        return await self.query('stats items')

    async def stats_slabs(self) -> List[str]:
        """Per slab class memory statistics"""
        return await self.query('stats slabs')

    async def close(self):
        await self.connection.close()
