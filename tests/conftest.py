"""
Pytest Configuration and Shared Fixtures.

Provides a threaded fake memcached server that answers stats commands from
canned replies, plus the canned replies themselves.
"""

from __future__ import annotations

import socketserver
import threading
from typing import Callable, Dict, List, Optional, Union

import pytest

Reply = Union[str, Callable[[int], str]]


def stat_block(*lines: str) -> str:
    """Format STAT lines followed by the END terminator"""
    return "".join(f"STAT {line}\r\n" for line in lines) + "END\r\n"


GENERAL_REPLY = stat_block(
    "pid 1234",
    "uptime 3600",
    "time 1700000000",
    "version 1.6.21",
    "rusage_user 1.500000",
    "rusage_system 0:250000",
    "curr_connections 10",
    "total_connections 150",
    "accepting_conns 1",
    "bytes 2048",
    "limit_maxbytes 67108864",
    "curr_items 5",
    "total_items 42",
    "evictions 3",
    "get_hits 100",
    "get_misses 7",
    "cmd_set 55",
    "cas_badval 1",
)

SETTINGS_REPLY = stat_block(
    "maxconns 1024",
    "evictions on",
    "lru_crawler yes",
    "item_size_max 1048576",
)

ITEMS_REPLY = stat_block(
    "items:1:number 3",
    "items:1:age 120",
    "items:1:hits_to_hot 4",
    "items:2:number 2",
)

SLABS_REPLY = stat_block(
    "1:chunk_size 96",
    "1:get_hits 80",
    "2:chunk_size 120",
    "active_slabs 2",
    "total_malloced 2097152",
)

CANNED_REPLIES: Dict[str, Reply] = {
    "stats": GENERAL_REPLY,
    "stats settings": SETTINGS_REPLY,
    "stats items": ITEMS_REPLY,
    "stats slabs": SLABS_REPLY,
}


class _StatsHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        fake: FakeMemcachedServer = self.server.fake  # type: ignore[attr-defined]
        index = fake.next_connection()
        for raw in self.rfile:
            command = raw.decode("utf-8").strip()
            fake.commands.append(command)
            if fake.silent:
                continue
            reply = fake.replies.get(command, "ERROR\r\n")
            if callable(reply):
                reply = reply(index)
            self.wfile.write(reply.encode("utf-8"))
            self.wfile.flush()
            if command == fake.hang_up_after:
                return


class _ThreadedServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class FakeMemcachedServer:
    """Memcached stand-in answering from a command -> reply table"""

    def __init__(self, replies: Optional[Dict[str, Reply]] = None, silent: bool = False,
                 hang_up_after: Optional[str] = None) -> None:
        self.replies = dict(CANNED_REPLIES if replies is None else replies)
        self.silent = silent
        self.hang_up_after = hang_up_after
        self.commands: List[str] = []
        self.connections = 0
        self._lock = threading.Lock()
        self._server = _ThreadedServer(("127.0.0.1", 0), _StatsHandler)
        self._server.fake = self  # type: ignore[attr-defined]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def address(self) -> str:
        host, port = self._server.server_address[:2]
        return f"{host}:{port}"

    def next_connection(self) -> int:
        with self._lock:
            index = self.connections
            self.connections += 1
            return index

    def start(self) -> "FakeMemcachedServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()


@pytest.fixture
def fake_memcached():
    """Factory starting fake servers that are shut down after the test"""
    servers: List[FakeMemcachedServer] = []

    def start(**kwargs) -> FakeMemcachedServer:
        server = FakeMemcachedServer(**kwargs).start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.stop()


@pytest.fixture
def closed_port_address() -> str:
    """Address of a local port with nothing listening"""
    server = _ThreadedServer(("127.0.0.1", 0), _StatsHandler)
    host, port = server.server_address[:2]
    server.server_close()
    return f"{host}:{port}"
