#!/usr/bin/env python3
"""
Memcached Prometheus Collector

Custom prometheus_client collector that scrapes one memcached server per
collect() call. Each scrape opens its own connection, issues the stats
commands in order, and turns the replies into a ScrapeSnapshot. Target
failures are reported through ``memcached_up`` instead of exceptions so a
dead server never breaks the metrics endpoint.
"""

import asyncio
import logging
import ssl
import time
from typing import Dict, Iterator, List, Optional, Tuple

from prometheus_client.core import Metric

from memcached_exporter import parser
from memcached_exporter.client import MemcachedClient
from memcached_exporter.errors import ConnectError, ParseError, ProtocolError
from memcached_exporter.mapping import (
    DEFAULT_MAPPER, SCRAPE_DURATION, SCRAPE_SUCCESS, UP, MetricMapper, Sample,
)
from memcached_exporter.prometheus_wrapper import MetricFactory
from memcached_exporter.transport import open_connection

# Commands issued on every scrape, with the parser section of their reply
STATS_COMMANDS: Tuple[Tuple[str, str], ...] = (
    ('stats', parser.GENERAL),
    ('stats settings', parser.SETTINGS),
    ('stats items', parser.ITEMS),
    ('stats slabs', parser.SLABS),
)


class ScrapeSnapshot:
    """Result of one scrape; not modified after construction"""

    def __init__(self, samples: Dict[str, Tuple[Sample, ...]], up: bool,
                 success: bool, duration: float):
        self.samples = samples
        self.up = up
        self.success = success
        self.duration = duration

    def meta_samples(self) -> Dict[str, Tuple[Sample, ...]]:
        return {
            UP.name: (Sample(UP.name, (), 1.0 if self.up else 0.0),),
            SCRAPE_SUCCESS.name: (Sample(SCRAPE_SUCCESS.name, (), 1.0 if self.success else 0.0),),
            SCRAPE_DURATION.name: (Sample(SCRAPE_DURATION.name, (), self.duration),),
        }

    def all_samples(self) -> Dict[str, Tuple[Sample, ...]]:
        """Stat samples plus the scrape meta-samples"""
        merged = dict(self.samples)
        merged.update(self.meta_samples())
        return merged

    def __repr__(self):
        count = sum(len(samples) for samples in self.samples.values())
        return (f"ScrapeSnapshot(up={self.up}, success={self.success}, "
                f"samples={count}, duration={self.duration:.3f}s)")


class MemcachedCollector:
    """Prometheus collector for a single memcached server"""

    def __init__(self, address: str, timeout: float = 1.0,
                 ssl_context: Optional[ssl.SSLContext] = None,
                 server_name: Optional[str] = None,
                 default_labels: Dict[str, str] = None,
                 mapper: MetricMapper = None,
                 commands: Tuple[Tuple[str, str], ...] = STATS_COMMANDS):
        self.address = address
        self.timeout = timeout
        self.ssl_context = ssl_context
        self.server_name = server_name
        self.mapper = mapper or DEFAULT_MAPPER
        self.commands = commands
        self.metric_factory = MetricFactory(default_labels=default_labels)
        self.logger = logging.getLogger(__name__)

    def describe(self) -> Iterator[Metric]:
        """Empty families for every metric this collector may produce"""
        for descriptor in self.mapper.describe():
            yield self.metric_factory.family(descriptor)

    def collect(self) -> Iterator[Metric]:
        """Scrape the target and yield the populated families"""
        snapshot = self.scrape()
        yield from self.metric_factory.families(self.mapper.describe(), snapshot.all_samples())

    def scrape(self) -> ScrapeSnapshot:
        """Run one full scrape on a private event loop"""
        start = time.monotonic()
        loop = asyncio.new_event_loop()
        try:
            samples, up, success = loop.run_until_complete(self._scrape())
        finally:
            loop.close()
        duration = time.monotonic() - start

        snapshot = ScrapeSnapshot(samples, up, success, duration)
        self.logger.debug(f"Scraped {self.address}: {snapshot}")
        return snapshot

    async def _scrape(self) -> Tuple[Dict[str, Tuple[Sample, ...]], bool, bool]:
        gathered: Dict[str, List[Sample]] = {}

        try:
            connection = await open_connection(self.address, self.timeout,
                                               self.ssl_context, self.server_name)
        except ConnectError as e:
            self.logger.warning(f"Memcached server {self.address} is not reachable: {e}")
            return {}, False, False

        client = MemcachedClient(connection)
        up = True
        success = True
        try:
            for command, section in self.commands:
                try:
                    lines = await client.query(command)
                except ProtocolError as e:
                    success = False
                    if e.fatal:
                        self.logger.warning(f"Aborting scrape of {self.address}: {e}")
                        up = False
                        break
                    self.logger.warning(f"Skipping '{command}' on {self.address}: {e}")
                    continue
                self._add_samples(gathered, lines, section)
        finally:
            await client.close()

        samples = {name: tuple(values) for name, values in gathered.items()}
        return samples, up, success

    def _add_samples(self, gathered: Dict[str, List[Sample]], lines: List[str], section: str):
        for stat in parser.parse_response(lines, section, self.address):
            try:
                sample = self.mapper.map(stat)
            except ParseError as e:
                self.logger.debug(f"Dropping stat from {self.address}: {e}")
                continue
            if sample is not None:
                gathered.setdefault(sample.name, []).append(sample)
