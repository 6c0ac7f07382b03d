"""
Unit Tests for the metric mapping table.

Tests for:
    - Exact decoding of a canned reply block
    - Unknown key filtering
    - Value coercion and its failures
    - Descriptor table consistency
"""

from __future__ import annotations

from typing import List

import pytest

from memcached_exporter.errors import ParseError
from memcached_exporter.mapping import (
    COUNTER,
    DEFAULT_MAPPER,
    NAMESPACE,
    STAT_MAPPINGS,
    MetricMapper,
    ParsedStat,
    Sample,
    describe,
    parse_bool,
    parse_timeval,
)
from memcached_exporter.parser import GENERAL, ITEMS, SETTINGS, SLABS, parse_response

MIXED_LINES = [
    "STAT uptime 3600",
    "STAT version 1.6.21",
    "STAT rusage_system 0:250000",
    "STAT get_hits 100",
    "STAT cas_badval 1",
]

SLAB_LINES = [
    "STAT 1:chunk_size 96",
    "STAT 1:get_hits 80",
    "STAT 2:chunk_size 120",
    "STAT total_malloced 2097152",
]

ITEM_LINES = [
    "STAT items:3:number 7",
    "STAT items:3:hits_to_warm 2",
]


def map_lines(lines: List[str], section: str = GENERAL) -> List[Sample]:
    samples = []
    for stat in parse_response(lines, section):
        sample = DEFAULT_MAPPER.map(stat)
        if sample is not None:
            samples.append(sample)
    return samples


class TestCannedReplies:
    """Known replies decode to exactly the expected samples."""

    def test_general_block(self) -> None:
        """Simple and constant-labelled general stats."""
        assert map_lines(MIXED_LINES) == [
            Sample("memcached_uptime_seconds_total", (), 3600.0),
            Sample("memcached_version", ("1.6.21",), 1.0),
            Sample("memcached_process_system_cpu_seconds_total", (), 0.25),
            Sample("memcached_commands_total", ("get", "hit"), 100.0),
            Sample("memcached_commands_total", ("cas", "badval"), 1.0),
        ]

    def test_slab_block(self) -> None:
        """Slab ids become the first label, constant labels follow."""
        assert map_lines(SLAB_LINES, SLABS) == [
            Sample("memcached_slab_chunk_size_bytes", ("1",), 96.0),
            Sample("memcached_slab_commands_total", ("1", "get", "hit"), 80.0),
            Sample("memcached_slab_chunk_size_bytes", ("2",), 120.0),
            Sample("memcached_malloced_bytes", (), 2097152.0),
        ]

    def test_items_block(self) -> None:
        """Item stats are labelled by slab and LRU segment."""
        assert map_lines(ITEM_LINES, ITEMS) == [
            Sample("memcached_slab_current_items", ("3",), 7.0),
            Sample("memcached_slab_lru_hits_total", ("3", "warm"), 2.0),
        ]

    def test_settings_do_not_collide_with_general_stats(self) -> None:
        """settings:evictions is not the evictions counter."""
        assert map_lines(["STAT evictions on", "STAT maxconns 1024"], SETTINGS) == [
            Sample("memcached_max_connections", (), 1024.0),
        ]


class TestUnknownKeys:
    """Unknown keys are excluded without affecting known ones."""

    def test_unknown_key_maps_to_none(self) -> None:
        """Keys missing from the table produce no sample."""
        assert DEFAULT_MAPPER.map(ParsedStat("brand_new_stat", (), "1")) is None

    def test_interspersed_unknown_keys(self) -> None:
        """Interleaving unknown keys leaves the known samples untouched."""
        noisy = []
        for index, line in enumerate(MIXED_LINES):
            noisy.append(f"STAT unknown_{index} 999")
            noisy.append(line)
        noisy.append("STAT some:future:key 5")
        assert map_lines(noisy) == map_lines(MIXED_LINES)


class TestCoercion:
    """Value conversion rules."""

    def test_non_numeric_value_raises_parse_error(self) -> None:
        """A recognised key with a bad value is a local ParseError."""
        with pytest.raises(ParseError):
            DEFAULT_MAPPER.map(ParsedStat("curr_items", (), "lots"))

    def test_oversized_timeval_raises_parse_error(self) -> None:
        """A microsecond part too large for a float is a ParseError."""
        with pytest.raises(ParseError):
            DEFAULT_MAPPER.map(ParsedStat("rusage_user", (), "0:" + "9" * 400))

    def test_bool_setting(self) -> None:
        """yes/no settings become 1/0."""
        sample = DEFAULT_MAPPER.map(ParsedStat("settings:lru_crawler", (), "no"))
        assert sample == Sample("memcached_lru_crawler_enabled", (), 0.0)

    @pytest.mark.parametrize("value, expected", [("1.500000", 1.5), ("2:500000", 2.5), ("0:000001", 0.000001)])
    def test_timeval(self, value: str, expected: float) -> None:
        """Both timeval encodings are understood."""
        assert parse_timeval(value) == pytest.approx(expected)

    def test_parse_bool_rejects_text(self) -> None:
        """Unknown boolean spellings raise ValueError."""
        with pytest.raises(ValueError):
            parse_bool("maybe")

    def test_label_arity_mismatch_raises(self) -> None:
        """A per-slab mapping without a slab id cannot produce a sample."""
        with pytest.raises(ParseError):
            DEFAULT_MAPPER.map(ParsedStat("slabs:chunk_size", (), "96"))


class TestDescriptorTable:
    """Consistency of the static table."""

    def test_names_are_unique_and_namespaced(self) -> None:
        """Every descriptor name is unique and prefixed."""
        names = [d.name for d in describe()]
        assert len(names) == len(set(names))
        assert all(name.startswith(f"{NAMESPACE}_") for name in names)

    def test_counters_end_in_total(self) -> None:
        """Counter names carry the _total suffix."""
        for descriptor in describe():
            if descriptor.kind == COUNTER:
                assert descriptor.name.endswith("_total"), descriptor.name

    def test_every_mapping_is_described(self) -> None:
        """map() can only produce names that describe() returns, with matching arity."""
        described = {d.name: d for d in describe()}
        for base_name, mapping in STAT_MAPPINGS.items():
            descriptor = described[mapping.descriptor.name]
            labels = ("1",) if base_name.startswith(("items:", "slabs:")) and descriptor.label_names[:1] == ("slab",) else ()
            value = "1.6.0" if mapping.value_as_label else ("yes" if mapping.convert is parse_bool else "1")
            sample = DEFAULT_MAPPER.map(ParsedStat(base_name, labels, value))
            assert sample is not None
            assert len(sample.label_values) == len(descriptor.label_names)

    def test_conflicting_descriptors_are_rejected(self) -> None:
        """Two different descriptors may not share a name."""
        from memcached_exporter.mapping import StatMapping, counter, gauge

        with pytest.raises(ValueError):
            MetricMapper({
                "a": StatMapping(gauge("dup", "first")),
                "b": StatMapping(counter("dup", "second")),
            })

    def test_describe_is_stable(self) -> None:
        """describe() returns the same sequence every time."""
        assert describe() == describe()
