#!/usr/bin/env python3
"""
Result Table - metrics registry owner

This module provides the registry that the HTTP endpoint renders on every
request. It wraps an explicitly constructed Prometheus CollectorRegistry so
collectors can be registered and tested without touching the process-wide
default registry.
"""

import logging
from typing import Dict, Optional

from prometheus_client import ProcessCollector, generate_latest
from prometheus_client.core import CollectorRegistry

from memcached_exporter import __version__
from memcached_exporter.mapping import NAMESPACE
from memcached_exporter.prometheus_wrapper import MetricFactory

logger = logging.getLogger(__name__)


def pid_from_file(pid_file: str):
    """Return a callable reading the memcached PID from a file on every scrape"""

    def read_pid() -> str:
        try:
            with open(pid_file, 'r') as f:
                pid = f.read().strip()
        except OSError as e:
            logger.warning(f"Could not read PID file {pid_file}: {e}")
            return 'invalid'
        if not pid.isdigit():
            logger.warning(f"PID file {pid_file} does not contain a PID")
            return 'invalid'
        return pid

    return read_pid


class ResultTable:
    """
    Registry wrapper that renders collector output on demand.

    Collectors registered here are invoked by every generate_metrics() call;
    nothing is cached between requests.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None,
                 default_labels: Dict[str, str] = None):
        """
        Initialize the result table

        Args:
            registry: registry to use; a fresh one is created when omitted
            default_labels: labels applied to the exporter's own metrics
        """
        self.registry = registry if registry is not None else CollectorRegistry()
        self.metric_factory = MetricFactory(default_labels=default_labels, registry=self.registry)

    def register(self, collector):
        """Register a collector; its describe() output is validated by the registry"""
        self.registry.register(collector)
        logger.debug(f"Registered collector {collector!r}")

    def register_build_info(self, version: str = __version__):
        """Expose memcached_exporter_build_info with the exporter version"""
        build_info = self.metric_factory.info(
            f'{NAMESPACE}_exporter_build',
            'A metric with a constant 1 value labeled by the exporter version.'
        )
        build_info.info({'version': version})

    def register_process_collector(self, pid_file: str) -> ProcessCollector:
        """Report OS process metrics of the memcached process named in pid_file"""
        collector = ProcessCollector(namespace=NAMESPACE, pid=pid_from_file(pid_file),
                                     registry=None)
        self.register(collector)
        logger.info(f"Process metrics enabled for PID file {pid_file}")
        return collector

    def generate_metrics(self) -> bytes:
        """
        Generate Prometheus-formatted metrics from the registry.

        Every registered collector runs during this call, so concurrent
        requests each perform their own scrape.

        Returns:
            bytes: Prometheus-formatted metrics
        """
        return generate_latest(self.registry)
