"""
Tests for the HTTP endpoint.

Tests for:
    - Landing page and unknown paths
    - Scrape-on-request metrics rendering
    - gzip negotiation
    - Build info and process metrics registration
"""

from __future__ import annotations

import gzip
import threading
import urllib.error
import urllib.request
from pathlib import Path

import pytest

from memcached_exporter import __version__
from memcached_exporter.__main__ import build_result_table, create_server
from memcached_exporter.config import ExporterConfig


@pytest.fixture
def exporter(fake_memcached):
    """Start an exporter on an ephemeral port in front of a fake memcached"""
    servers = []

    def start(**kwargs) -> str:
        if "address" not in kwargs:
            kwargs["address"] = fake_memcached().address
        config = ExporterConfig(listen_address="127.0.0.1:0", timeout=2.0, **kwargs)
        server = create_server(config, build_result_table(config))
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        host, port = server.server_address[:2]
        return f"http://{host}:{port}"

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()


def fetch(url: str, headers=None):
    request = urllib.request.Request(url, headers=headers or {})
    with urllib.request.urlopen(request, timeout=10) as response:
        return response.status, dict(response.headers), response.read()


class TestEndpoints:
    """Routing of the HTTP handler."""

    def test_landing_page_links_metrics(self, exporter) -> None:
        """The root page links to the telemetry path."""
        status, headers, body = fetch(exporter(telemetry_path="/stats") + "/")
        assert status == 200
        assert headers["Content-Type"].startswith("text/html")
        assert b'href="/stats"' in body

    def test_unknown_path_is_404(self, exporter) -> None:
        """Anything else is not found."""
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            fetch(exporter() + "/nope")
        assert excinfo.value.code == 404


class TestMetrics:
    """Metrics served on request."""

    def test_metrics_scrape_target(self, exporter) -> None:
        """Each request reports the live server state."""
        status, headers, body = fetch(exporter() + "/metrics")
        text = body.decode("utf-8")

        assert status == 200
        assert headers["Content-Type"].startswith("text/plain")
        assert "memcached_up 1.0" in text
        assert 'memcached_commands_total{command="get",status="hit"} 100.0' in text
        assert f'memcached_exporter_build_info{{version="{__version__}"}} 1.0' in text

    def test_unreachable_target_still_serves(self, exporter, closed_port_address: str) -> None:
        """A dead memcached is reported, not turned into an HTTP error."""
        status, _, body = fetch(exporter(address=closed_port_address) + "/metrics")
        assert status == 200
        assert b"memcached_up 0.0" in body
        assert b"\nmemcached_current_items " not in body

    def test_gzip_when_accepted(self, exporter) -> None:
        """Clients accepting gzip get a compressed body."""
        _, headers, body = fetch(exporter() + "/metrics", {"Accept-Encoding": "gzip"})
        assert headers["Content-Encoding"] == "gzip"
        assert b"memcached_up 1.0" in gzip.decompress(body)

    def test_region_label(self, exporter) -> None:
        """The region is attached to scraped and build info metrics."""
        _, _, body = fetch(exporter(region="kr") + "/metrics")
        assert b'memcached_up{region="kr"} 1.0' in body
        assert b'memcached_exporter_build_info{region="kr",version=' in body

    def test_unreadable_pid_file_does_not_break_metrics(self, exporter, tmp_path: Path) -> None:
        """Process metrics are best-effort."""
        _, _, body = fetch(exporter(pid_file=str(tmp_path / "missing.pid")) + "/metrics")
        assert b"memcached_up 1.0" in body
