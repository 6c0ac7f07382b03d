#!/usr/bin/env python3
"""
Memcached Exporter CLI - Main entry point

Serves memcached statistics as Prometheus metrics. Every request to the
metrics path scrapes the configured memcached server; the landing page at
``/`` links to it.
"""

import argparse
import gzip
import logging
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any, Dict, List, Optional

from prometheus_client import CONTENT_TYPE_LATEST

from memcached_exporter import __version__
from memcached_exporter.collector import MemcachedCollector
from memcached_exporter.config import ExporterConfig, build_config, load_config_file, merge_settings
from memcached_exporter.errors import ConfigError
from memcached_exporter.result_table import ResultTable

logger = logging.getLogger(__name__)

LANDING_PAGE = """<!DOCTYPE html>
<html>
<head><title>Memcached Exporter</title></head>
<body>
<h1>Memcached Exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>"""


class ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
    """HTTP Server with threading support for concurrent requests"""
    daemon_threads = True
    allow_reuse_address = True


def make_handler(result_table: ResultTable, telemetry_path: str = '/metrics'):
    """Build a request handler class bound to a result table"""
    landing_page = LANDING_PAGE.format(path=telemetry_path).encode('utf-8')

    class MetricsHandler(BaseHTTPRequestHandler):
        """Scrapes on every metrics request; gzip when the client accepts it"""

        def log_message(self, format, *args):
            logger.debug(f"{self.address_string()} - {format % args}")

        def _send(self, status: int, content_type: str, body: bytes, headers: Dict[str, str] = None):
            self.send_response(status)
            self.send_header('Content-Type', content_type)
            for name, value in (headers or {}).items():
                self.send_header(name, value)
            self.send_header('Content-Length', str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self):
            path = self.path.split('?', 1)[0]
            try:
                if path == telemetry_path:
                    self._serve_metrics()
                elif path == '/':
                    self._send(200, 'text/html; charset=utf-8', landing_page)
                else:
                    self.send_error(404, "Not Found")
            except (BrokenPipeError, ConnectionResetError):
                # Client disconnected
                logger.debug(f"Client {self.address_string()} disconnected")

        def _serve_metrics(self):
            try:
                data = result_table.generate_metrics()
            except Exception as e:
                logger.error(f"Error serving metrics: {e}", exc_info=True)
                self.send_error(500, f"Internal Server Error: {e}")
                return

            if 'gzip' in self.headers.get('Accept-Encoding', ''):
                self._send(200, CONTENT_TYPE_LATEST, gzip.compress(data, compresslevel=6),
                           {'Content-Encoding': 'gzip'})
            else:
                self._send(200, CONTENT_TYPE_LATEST, data)

    return MetricsHandler


def build_result_table(config: ExporterConfig) -> ResultTable:
    """Create the registry with the memcached, build info and optional process collectors"""
    result_table = ResultTable(default_labels=config.default_labels)
    result_table.register(MemcachedCollector(
        config.address,
        timeout=config.timeout,
        ssl_context=config.ssl_context(),
        server_name=config.server_name,
        default_labels=config.default_labels,
    ))
    result_table.register_build_info()
    if config.pid_file:
        result_table.register_process_collector(config.pid_file)
    return result_table


def create_server(config: ExporterConfig, result_table: ResultTable) -> ThreadedHTTPServer:
    host, port = config.listen_host_port()
    return ThreadedHTTPServer((host, port), make_handler(result_table, config.telemetry_path))


def parse_args(args_list: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Memcached Prometheus Exporter',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scrape a local memcached
  %(prog)s --address localhost:11211

  # Run from a YAML configuration file, overriding the timeout
  %(prog)s -c config.yaml --timeout 2
        """
    )
    parser.add_argument('-c', '--config',
                       help='Path to YAML configuration file')
    parser.add_argument('--address',
                       help='Memcached server address (default: localhost:11211)')
    parser.add_argument('--timeout', type=float,
                       help='Memcached connect and read timeout in seconds (default: 1.0)')
    parser.add_argument('--pid-file', dest='pid_file',
                       help='Optional path to a file containing the memcached PID for additional metrics')
    parser.add_argument('--listen-address', dest='listen_address',
                       help='Address to listen on for web interface and telemetry (default: :9150)')
    parser.add_argument('--telemetry-path', dest='telemetry_path',
                       help='Path under which to expose metrics (default: /metrics)')
    parser.add_argument('--region',
                       help='Region label for metrics')
    parser.add_argument('--log-level', dest='log_level',
                       choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                       help='Log level (default: INFO)')

    # TLS to memcached
    parser.add_argument('--tls-enable', dest='tls_enable', action='store_true', default=None,
                       help='Enable TLS connections to memcached')
    parser.add_argument('--tls-certfile', dest='tls_certfile',
                       help='Client certificate file')
    parser.add_argument('--tls-keyfile', dest='tls_keyfile',
                       help='Client private key file')
    parser.add_argument('--tls-cafile', dest='tls_cafile',
                       help='Client root CA file')
    parser.add_argument('--tls-servername', dest='tls_servername',
                       help='Memcached TLS certificate servername (default: host part of --address)')
    parser.add_argument('--tls-skipverify', dest='tls_skipverify', action='store_true', default=None,
                       help='Skip server certificate verification')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser.parse_args(args_list)


def args_to_settings(args: argparse.Namespace) -> Dict[str, Any]:
    """Command line values as a settings layer; unset flags are None"""
    return {
        'address': args.address,
        'timeout': args.timeout,
        'pid_file': args.pid_file,
        'listen_address': args.listen_address,
        'telemetry_path': args.telemetry_path,
        'region': args.region,
        'log_level': args.log_level,
        'tls': {
            'enable': args.tls_enable,
            'certfile': args.tls_certfile,
            'keyfile': args.tls_keyfile,
            'cafile': args.tls_cafile,
            'servername': args.tls_servername,
            'skipverify': args.tls_skipverify,
        },
    }


def load_settings(args: argparse.Namespace) -> ExporterConfig:
    file_settings = load_config_file(args.config) if args.config else {}
    return build_config(merge_settings(file_settings, args_to_settings(args)))


def run_exporter(args_list: Optional[List[str]] = None):
    """Main entry point for the memcached exporter"""
    args = parse_args(args_list)

    try:
        config = load_settings(args)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info(f"Starting memcached_exporter {__version__}")

    try:
        result_table = build_result_table(config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    try:
        server = create_server(config, result_table)
    except OSError as e:
        logger.error(f"Error running HTTP server: {e}")
        sys.exit(1)

    logger.info(f"Scraping memcached at {config.address} (timeout: {config.timeout}s)")
    logger.info(f"Listening on address {config.listen_address}, metrics at {config.telemetry_path}")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        server.server_close()


def main():
    run_exporter()


if __name__ == '__main__':
    main()
