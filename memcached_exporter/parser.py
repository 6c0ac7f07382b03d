#!/usr/bin/env python3
"""
Stat parser

Turns ``STAT <key> <value>`` reply lines into ParsedStat records. Sub-report
keys that embed a slab class id (``items:3:number``, ``3:chunk_size``) are
split into a stable base name and a label value. Values stay as text; numeric
coercion happens in the mapper.
"""

import logging
import re
from typing import Dict, Iterator, List, NamedTuple, Optional, Pattern, Tuple

from memcached_exporter.errors import ParseError

logger = logging.getLogger(__name__)

# Sections name the sub-report a reply came from; general stats have none.
GENERAL = ''
SETTINGS = 'settings'
ITEMS = 'items'
SLABS = 'slabs'

# Composite key families per section. Named groups other than ``field``
# become label values, in group order.
KEY_FAMILIES: Dict[str, List[Pattern]] = {
    ITEMS: [re.compile(r'^items:(?P<slab>\d+):(?P<field>\w+)$')],
    SLABS: [re.compile(r'^(?P<slab>\d+):(?P<field>\w+)$')],
}


class StatEntry(NamedTuple):
    key: str
    raw_value: str


class ParsedStat(NamedTuple):
    base_name: str
    label_values: Tuple[str, ...]
    value: str


def parse_line(line: str) -> StatEntry:
    """Parse one reply line

    Raises:
        ParseError: the line is not of the form ``STAT <key> <value>``
    """
    parts = line.rstrip('\r\n').split(' ', 2)
    if len(parts) != 3 or parts[0] != 'STAT' or not parts[1]:
        raise ParseError(f"Malformed stats line: {line!r}")
    return StatEntry(parts[1], parts[2])


def _qualify(section: str, name: str) -> str:
    return f"{section}:{name}" if section else name


def split_key(entry: StatEntry, section: str = GENERAL) -> ParsedStat:
    """Factor embedded identifiers out of a key

    Keys that match none of the section's composite families are kept whole,
    so unknown future shapes simply fail to match a mapping later on.
    """
    for pattern in KEY_FAMILIES.get(section, ()):
        match = pattern.match(entry.key)
        if match:
            groups = match.groupdict()
            field = groups.pop('field')
            return ParsedStat(_qualify(section, field), tuple(groups.values()), entry.raw_value)
    return ParsedStat(_qualify(section, entry.key), (), entry.raw_value)


def parse_response(lines: List[str], section: str = GENERAL,
                   address: Optional[str] = None) -> Iterator[ParsedStat]:
    """Parse every line of one command's reply, skipping malformed lines"""
    for line in lines:
        try:
            entry = parse_line(line)
        except ParseError as e:
            logger.debug(f"Skipping line from {address or 'target'}: {e}")
            continue
        yield split_key(entry, section)
