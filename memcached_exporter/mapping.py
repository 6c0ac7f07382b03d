#!/usr/bin/env python3
"""
Metric mapping table

Static table from memcached stat names to metric descriptors. Every metric
the exporter can emit is declared here; stats missing from the table are
dropped so that newer or older servers degrade gracefully.

Base names for sub-reports carry the section prefix produced by the parser
(``settings:``, ``items:``, ``slabs:``). Per-slab entries receive the slab id
as their first label value; ``const_labels`` are appended after it.
"""

from typing import Callable, Dict, NamedTuple, Optional, Tuple

from memcached_exporter.errors import ParseError
from memcached_exporter.parser import ParsedStat

NAMESPACE = 'memcached'

COUNTER = 'counter'
GAUGE = 'gauge'


class MetricDescriptor(NamedTuple):
    name: str
    help: str
    kind: str
    label_names: Tuple[str, ...] = ()


class Sample(NamedTuple):
    name: str
    label_values: Tuple[str, ...]
    value: float


def parse_number(value: str) -> float:
    return float(value)


def parse_timeval(value: str) -> float:
    """CPU times are ``sec.usec``, or ``sec:usec`` on old servers"""
    if ':' in value:
        seconds, _, micros = value.partition(':')
        return int(seconds) + int(micros) / 1e6
    return float(value)


def parse_bool(value: str) -> float:
    lowered = value.lower()
    if lowered in ('yes', 'on', 'true', '1'):
        return 1.0
    if lowered in ('no', 'off', 'false', '0'):
        return 0.0
    raise ValueError(f"not a boolean: {value!r}")


class StatMapping(NamedTuple):
    descriptor: MetricDescriptor
    const_labels: Tuple[str, ...] = ()
    convert: Callable[[str], float] = parse_number
    # Text stats such as the version are exposed as a label on a constant 1
    value_as_label: bool = False


def _name(name: str) -> str:
    return f"{NAMESPACE}_{name}"


def counter(name: str, documentation: str, *label_names: str) -> MetricDescriptor:
    return MetricDescriptor(_name(name), documentation, COUNTER, label_names)


def gauge(name: str, documentation: str, *label_names: str) -> MetricDescriptor:
    return MetricDescriptor(_name(name), documentation, GAUGE, label_names)


# Scrape meta-metrics
UP = gauge('up', 'Could the memcached server be reached.')
SCRAPE_SUCCESS = gauge('scrape_success', 'Whether every stats command of the last scrape succeeded.')
SCRAPE_DURATION = gauge('scrape_duration_seconds', 'Time the last scrape of memcached took.')

META_DESCRIPTORS = (UP, SCRAPE_SUCCESS, SCRAPE_DURATION)

# General stats
UPTIME = counter('uptime_seconds_total', 'Number of seconds since the server started.')
TIME = gauge('time_seconds', 'Current UNIX time according to the server.')
VERSION = gauge('version', 'The version of this memcached server.', 'version')
USER_CPU = counter('process_user_cpu_seconds_total', 'Accumulated user time for this process.')
SYSTEM_CPU = counter('process_system_cpu_seconds_total', 'Accumulated system time for this process.')
THREADS = gauge('threads', 'Number of worker threads requested.')
CURRENT_CONNECTIONS = gauge('current_connections', 'Current number of open connections.')
CONNECTIONS = counter('connections_total', 'Total number of connections opened since the server started running.')
CONNECTIONS_REJECTED = counter('connections_rejected_total',
                               'Total number of connections rejected due to hitting the maxconns limit.')
CONNECTIONS_YIELDED = counter('connections_yielded_total',
                              'Total number of connections yielded running due to hitting the per-event request limit.')
LISTENER_DISABLED = counter('connections_listener_disabled_total',
                            'Number of times that memcached has hit its connections limit and disabled its listener.')
ACCEPTING_CONNECTIONS = gauge('accepting_connections', 'Whether the server is accepting new connections.')
CURRENT_BYTES = gauge('current_bytes', 'Current number of bytes used to store items.')
LIMIT_BYTES = gauge('limit_bytes', 'Number of bytes this server is allowed to use for storage.')
CURRENT_ITEMS = gauge('current_items', 'Current number of items stored by this instance.')
ITEMS = counter('items_total', 'Total number of items stored during the life of this instance.')
ITEMS_EVICTED = counter('items_evicted_total',
                        'Total number of valid items removed from cache to free memory for new items.')
ITEMS_RECLAIMED = counter('items_reclaimed_total',
                          'Total number of times an entry was stored using memory from an expired entry.')
ITEMS_EXPIRED_UNFETCHED = counter('items_expired_unfetched_total',
                                  'Total number of items pulled from LRU that were never touched before expiring.')
ITEMS_EVICTED_UNFETCHED = counter('items_evicted_unfetched_total',
                                  'Total number of items evicted from LRU that were never touched.')
READ_BYTES = counter('read_bytes_total', 'Total number of bytes read by this server from network.')
WRITTEN_BYTES = counter('written_bytes_total', 'Total number of bytes sent by this server to network.')
MALLOC_FAILURES = counter('malloc_failures_total', 'Total number of failed memory allocations.')
COMMANDS = counter('commands_total',
                   'Total number of all requests broken down by command (get, set, etc.) and status.',
                   'command', 'status')
HASH_BYTES = gauge('hash_bytes', 'Bytes currently used by hash tables.')
HASH_POWER_LEVEL = gauge('hash_power_level', 'Current size multiplier for the hash table.')
SLABS_MOVED = counter('slabs_moved_total', 'Total number of slab pages moved between slab classes.')

LRU_ITEMS_CHECKED = counter('lru_crawler_items_checked_total', 'Total items examined by the LRU crawler.')
LRU_RECLAIMED = counter('lru_crawler_reclaimed_total', 'Total items freed by the LRU crawler.')
LRU_STARTS = counter('lru_crawler_starts_total', 'Times an LRU crawler was started.')
LRU_MOVES_TO_COLD = counter('lru_crawler_moves_to_cold_total', 'Total number of items moved from HOT/WARM to COLD LRU.')
LRU_MOVES_TO_WARM = counter('lru_crawler_moves_to_warm_total', 'Total number of items moved from COLD to WARM LRU.')
LRU_MOVES_WITHIN = counter('lru_crawler_moves_within_lru_total',
                           'Total number of items reshuffled within HOT or WARM LRU.')

EXTSTORE_BYTES_READ = counter('extstore_bytes_read_total', 'Total bytes read from extstore.')
EXTSTORE_BYTES_WRITTEN = counter('extstore_bytes_written_total', 'Total bytes written to extstore.')
EXTSTORE_BYTES_EVICTED = counter('extstore_bytes_evicted_total', 'Total bytes evicted from extstore.')
EXTSTORE_BYTES_USED = gauge('extstore_bytes_used', 'Current bytes used in extstore.')
EXTSTORE_BYTES_FRAGMENTED = gauge('extstore_bytes_fragmented', 'Current bytes fragmented in extstore.')
EXTSTORE_BYTES_LIMIT = gauge('extstore_bytes_limit', 'Number of bytes extstore is allowed to use.')
EXTSTORE_OBJECTS_READ = counter('extstore_objects_read_total', 'Total objects read from extstore.')
EXTSTORE_OBJECTS_WRITTEN = counter('extstore_objects_written_total', 'Total objects written to extstore.')
EXTSTORE_OBJECTS_EVICTED = counter('extstore_objects_evicted_total', 'Total objects evicted from extstore.')
EXTSTORE_OBJECTS_USED = gauge('extstore_objects_used', 'Current objects stored in extstore.')
EXTSTORE_PAGE_ALLOCS = counter('extstore_page_allocs_total', 'Total extstore page allocations.')
EXTSTORE_PAGE_EVICTIONS = counter('extstore_page_evictions_total', 'Total extstore page evictions.')
EXTSTORE_PAGE_RECLAIMS = counter('extstore_page_reclaims_total', 'Total extstore pages reclaimed after becoming empty.')
EXTSTORE_PAGES_FREE = gauge('extstore_pages_free', 'Number of free extstore pages.')
EXTSTORE_PAGES_USED = gauge('extstore_pages_used', 'Number of used extstore pages.')
EXTSTORE_IO_QUEUE = gauge('extstore_io_queue_depth', 'Current extstore IO queue depth.')

# stats settings
MAX_CONNECTIONS = gauge('max_connections', 'Maximum number of clients allowed.')
ITEM_MAX_BYTES = gauge('item_max_bytes', 'Maximum size of a single item.')
LRU_ENABLED = gauge('lru_crawler_enabled', 'Whether the LRU crawler is enabled.')
LRU_SLEEP = gauge('lru_crawler_sleep', 'Microseconds to sleep between LRU crawls.')
LRU_TO_CRAWL = gauge('lru_crawler_to_crawl', 'Max items to crawl per slab per run.')
LRU_MAINTAINER = gauge('lru_crawler_maintainer_thread', 'Split LRU mode and background threads.')
LRU_HOT_PERCENT = gauge('lru_crawler_hot_percent', 'Percent of slab memory reserved for HOT LRU.')
LRU_WARM_PERCENT = gauge('lru_crawler_warm_percent', 'Percent of slab memory reserved for WARM LRU.')
LRU_HOT_MAX_FACTOR = gauge('lru_crawler_hot_max_factor', 'Set idle age of HOT LRU to COLD age * this.')
LRU_WARM_MAX_FACTOR = gauge('lru_crawler_warm_max_factor', 'Set idle age of WARM LRU to COLD age * this.')

# stats slabs
ACTIVE_SLABS = gauge('active_slabs', 'Total number of slab classes allocated.')
MALLOCED_BYTES = gauge('malloced_bytes', 'Number of bytes of memory allocated to slab pages.')
SLAB_CHUNK_SIZE = gauge('slab_chunk_size_bytes', 'Number of bytes allocated to each chunk within this slab class.', 'slab')
SLAB_CHUNKS_PER_PAGE = gauge('slab_chunks_per_page', 'Number of chunks within a single page for this slab class.', 'slab')
SLAB_CURRENT_PAGES = gauge('slab_current_pages', 'Number of pages allocated to this slab class.', 'slab')
SLAB_CURRENT_CHUNKS = gauge('slab_current_chunks', 'Number of chunks allocated to this slab class.', 'slab')
SLAB_CHUNKS_USED = gauge('slab_chunks_used', 'Number of chunks allocated to an item.', 'slab')
SLAB_CHUNKS_FREE = gauge('slab_chunks_free', 'Number of chunks not yet allocated items.', 'slab')
SLAB_CHUNKS_FREE_END = gauge('slab_chunks_free_end', 'Number of free chunks at the end of the last allocated page.', 'slab')
SLAB_MEM_REQUESTED = gauge('slab_mem_requested_bytes', 'Number of bytes of memory actual items take up within a slab.', 'slab')
SLAB_COMMANDS = counter('slab_commands_total',
                        'Total number of all requests broken down by command (get, set, etc.) and status per slab.',
                        'slab', 'command', 'status')

# stats items
SLAB_CURRENT_ITEMS = gauge('slab_current_items', 'Number of items currently stored in this slab class.', 'slab')
SLAB_HOT_ITEMS = gauge('slab_hot_items', 'Number of items presently stored in the HOT LRU.', 'slab')
SLAB_WARM_ITEMS = gauge('slab_warm_items', 'Number of items presently stored in the WARM LRU.', 'slab')
SLAB_COLD_ITEMS = gauge('slab_cold_items', 'Number of items presently stored in the COLD LRU.', 'slab')
SLAB_ITEMS_AGE = gauge('slab_items_age_seconds', 'Number of seconds the oldest item has been in the slab class.', 'slab')
SLAB_HOT_AGE = gauge('slab_hot_age_seconds', 'Age of the oldest item in HOT LRU.', 'slab')
SLAB_WARM_AGE = gauge('slab_warm_age_seconds', 'Age of the oldest item in WARM LRU.', 'slab')
SLAB_EVICTED = counter('slab_items_evicted_total',
                       'Total number of times an item had to be evicted from the LRU before it expired.', 'slab')
SLAB_EVICTED_NONZERO = counter('slab_items_evicted_nonzero_total',
                               'Total number of times an item which had an explicit expire time set had to be evicted from the LRU before it expired.',
                               'slab')
SLAB_EVICTED_UNFETCHED = counter('slab_items_evicted_unfetched_total',
                                 'Total number of items evicted and never fetched.', 'slab')
SLAB_EXPIRED_UNFETCHED = counter('slab_items_expired_unfetched_total',
                                 'Total number of valid items evicted from the LRU which were never touched after being set.',
                                 'slab')
SLAB_OUT_OF_MEMORY = counter('slab_items_outofmemory_total',
                             'Total number of items for this slab class that have triggered an out of memory error.', 'slab')
SLAB_TAILREPAIRS = counter('slab_items_tailrepairs_total',
                           'Total number of times the entries for a particular ID need repairing.', 'slab')
SLAB_RECLAIMED = counter('slab_items_reclaimed_total',
                         'Total number of items reclaimed.', 'slab')
SLAB_CRAWLER_RECLAIMED = counter('slab_items_crawler_reclaimed_total',
                                 'Total number of items freed by the LRU crawler.', 'slab')
SLAB_MOVES_TO_COLD = counter('slab_items_moves_to_cold_total', 'Number of items moved from HOT or WARM into COLD.', 'slab')
SLAB_MOVES_TO_WARM = counter('slab_items_moves_to_warm_total', 'Number of items moved from COLD to WARM.', 'slab')
SLAB_MOVES_WITHIN = counter('slab_items_moves_within_lru_total',
                            'Number of times active items were bumped within HOT or WARM.', 'slab')
SLAB_LRU_HITS = counter('slab_lru_hits_total', 'Number of get_hits to the LRU.', 'slab', 'lru')


def _commands(**stats: Tuple[str, str]) -> Dict[str, StatMapping]:
    return {key: StatMapping(COMMANDS, labels) for key, labels in stats.items()}


def _slab_commands(**stats: Tuple[str, str]) -> Dict[str, StatMapping]:
    return {f"slabs:{key}": StatMapping(SLAB_COMMANDS, labels) for key, labels in stats.items()}


STAT_MAPPINGS: Dict[str, StatMapping] = {
    'uptime': StatMapping(UPTIME),
    'time': StatMapping(TIME),
    'version': StatMapping(VERSION, value_as_label=True),
    'rusage_user': StatMapping(USER_CPU, convert=parse_timeval),
    'rusage_system': StatMapping(SYSTEM_CPU, convert=parse_timeval),
    'threads': StatMapping(THREADS),
    'curr_connections': StatMapping(CURRENT_CONNECTIONS),
    'total_connections': StatMapping(CONNECTIONS),
    'rejected_connections': StatMapping(CONNECTIONS_REJECTED),
    'conn_yields': StatMapping(CONNECTIONS_YIELDED),
    'listen_disabled_num': StatMapping(LISTENER_DISABLED),
    'accepting_conns': StatMapping(ACCEPTING_CONNECTIONS, convert=parse_bool),
    'bytes': StatMapping(CURRENT_BYTES),
    'limit_maxbytes': StatMapping(LIMIT_BYTES),
    'curr_items': StatMapping(CURRENT_ITEMS),
    'total_items': StatMapping(ITEMS),
    'evictions': StatMapping(ITEMS_EVICTED),
    'reclaimed': StatMapping(ITEMS_RECLAIMED),
    'expired_unfetched': StatMapping(ITEMS_EXPIRED_UNFETCHED),
    'evicted_unfetched': StatMapping(ITEMS_EVICTED_UNFETCHED),
    'bytes_read': StatMapping(READ_BYTES),
    'bytes_written': StatMapping(WRITTEN_BYTES),
    'malloc_fails': StatMapping(MALLOC_FAILURES),
    'hash_bytes': StatMapping(HASH_BYTES),
    'hash_power_level': StatMapping(HASH_POWER_LEVEL),
    'slabs_moved': StatMapping(SLABS_MOVED),
    'crawler_items_checked': StatMapping(LRU_ITEMS_CHECKED),
    'crawler_reclaimed': StatMapping(LRU_RECLAIMED),
    'lru_crawler_starts': StatMapping(LRU_STARTS),
    'moves_to_cold': StatMapping(LRU_MOVES_TO_COLD),
    'moves_to_warm': StatMapping(LRU_MOVES_TO_WARM),
    'moves_within_lru': StatMapping(LRU_MOVES_WITHIN),
    'extstore_bytes_read': StatMapping(EXTSTORE_BYTES_READ),
    'extstore_bytes_written': StatMapping(EXTSTORE_BYTES_WRITTEN),
    'extstore_bytes_evicted': StatMapping(EXTSTORE_BYTES_EVICTED),
    'extstore_bytes_used': StatMapping(EXTSTORE_BYTES_USED),
    'extstore_bytes_fragmented': StatMapping(EXTSTORE_BYTES_FRAGMENTED),
    'extstore_limit_maxbytes': StatMapping(EXTSTORE_BYTES_LIMIT),
    'extstore_objects_read': StatMapping(EXTSTORE_OBJECTS_READ),
    'extstore_objects_written': StatMapping(EXTSTORE_OBJECTS_WRITTEN),
    'extstore_objects_evicted': StatMapping(EXTSTORE_OBJECTS_EVICTED),
    'extstore_objects_used': StatMapping(EXTSTORE_OBJECTS_USED),
    'extstore_page_allocs': StatMapping(EXTSTORE_PAGE_ALLOCS),
    'extstore_page_evictions': StatMapping(EXTSTORE_PAGE_EVICTIONS),
    'extstore_page_reclaims': StatMapping(EXTSTORE_PAGE_RECLAIMS),
    'extstore_pages_free': StatMapping(EXTSTORE_PAGES_FREE),
    'extstore_pages_used': StatMapping(EXTSTORE_PAGES_USED),
    'extstore_io_queue': StatMapping(EXTSTORE_IO_QUEUE),

    'settings:maxconns': StatMapping(MAX_CONNECTIONS),
    'settings:item_size_max': StatMapping(ITEM_MAX_BYTES),
    'settings:lru_crawler': StatMapping(LRU_ENABLED, convert=parse_bool),
    'settings:lru_crawler_sleep': StatMapping(LRU_SLEEP),
    'settings:lru_crawler_tocrawl': StatMapping(LRU_TO_CRAWL),
    'settings:lru_maintainer_thread': StatMapping(LRU_MAINTAINER, convert=parse_bool),
    'settings:hot_lru_pct': StatMapping(LRU_HOT_PERCENT),
    'settings:warm_lru_pct': StatMapping(LRU_WARM_PERCENT),
    'settings:hot_max_factor': StatMapping(LRU_HOT_MAX_FACTOR),
    'settings:warm_max_factor': StatMapping(LRU_WARM_MAX_FACTOR),

    'slabs:active_slabs': StatMapping(ACTIVE_SLABS),
    'slabs:total_malloced': StatMapping(MALLOCED_BYTES),
    'slabs:chunk_size': StatMapping(SLAB_CHUNK_SIZE),
    'slabs:chunks_per_page': StatMapping(SLAB_CHUNKS_PER_PAGE),
    'slabs:total_pages': StatMapping(SLAB_CURRENT_PAGES),
    'slabs:total_chunks': StatMapping(SLAB_CURRENT_CHUNKS),
    'slabs:used_chunks': StatMapping(SLAB_CHUNKS_USED),
    'slabs:free_chunks': StatMapping(SLAB_CHUNKS_FREE),
    'slabs:free_chunks_end': StatMapping(SLAB_CHUNKS_FREE_END),
    'slabs:mem_requested': StatMapping(SLAB_MEM_REQUESTED),

    'items:number': StatMapping(SLAB_CURRENT_ITEMS),
    'items:number_hot': StatMapping(SLAB_HOT_ITEMS),
    'items:number_warm': StatMapping(SLAB_WARM_ITEMS),
    'items:number_cold': StatMapping(SLAB_COLD_ITEMS),
    'items:age': StatMapping(SLAB_ITEMS_AGE),
    'items:age_hot': StatMapping(SLAB_HOT_AGE),
    'items:age_warm': StatMapping(SLAB_WARM_AGE),
    'items:evicted': StatMapping(SLAB_EVICTED),
    'items:evicted_nonzero': StatMapping(SLAB_EVICTED_NONZERO),
    'items:evicted_unfetched': StatMapping(SLAB_EVICTED_UNFETCHED),
    'items:expired_unfetched': StatMapping(SLAB_EXPIRED_UNFETCHED),
    'items:outofmemory': StatMapping(SLAB_OUT_OF_MEMORY),
    'items:tailrepairs': StatMapping(SLAB_TAILREPAIRS),
    'items:reclaimed': StatMapping(SLAB_RECLAIMED),
    'items:crawler_reclaimed': StatMapping(SLAB_CRAWLER_RECLAIMED),
    'items:moves_to_cold': StatMapping(SLAB_MOVES_TO_COLD),
    'items:moves_to_warm': StatMapping(SLAB_MOVES_TO_WARM),
    'items:moves_within_lru': StatMapping(SLAB_MOVES_WITHIN),
    'items:hits_to_hot': StatMapping(SLAB_LRU_HITS, ('hot',)),
    'items:hits_to_warm': StatMapping(SLAB_LRU_HITS, ('warm',)),
    'items:hits_to_cold': StatMapping(SLAB_LRU_HITS, ('cold',)),
    'items:hits_to_temp': StatMapping(SLAB_LRU_HITS, ('temp',)),
}

STAT_MAPPINGS.update(_commands(
    get_hits=('get', 'hit'),
    get_misses=('get', 'miss'),
    get_expired=('get', 'expired'),
    get_flushed=('get', 'flushed'),
    cmd_set=('set', 'hit'),
    delete_hits=('delete', 'hit'),
    delete_misses=('delete', 'miss'),
    incr_hits=('incr', 'hit'),
    incr_misses=('incr', 'miss'),
    decr_hits=('decr', 'hit'),
    decr_misses=('decr', 'miss'),
    cas_hits=('cas', 'hit'),
    cas_misses=('cas', 'miss'),
    cas_badval=('cas', 'badval'),
    touch_hits=('touch', 'hit'),
    touch_misses=('touch', 'miss'),
    cmd_flush=('flush', 'hit'),
))

STAT_MAPPINGS.update(_slab_commands(
    get_hits=('get', 'hit'),
    cmd_set=('set', 'hit'),
    delete_hits=('delete', 'hit'),
    incr_hits=('incr', 'hit'),
    decr_hits=('decr', 'hit'),
    cas_hits=('cas', 'hit'),
    cas_badval=('cas', 'badval'),
    touch_hits=('touch', 'hit'),
))


class MetricMapper:
    """Maps parsed stats onto samples of the declared descriptors"""

    def __init__(self, mappings: Optional[Dict[str, StatMapping]] = None,
                 meta_descriptors: Tuple[MetricDescriptor, ...] = META_DESCRIPTORS):
        self.mappings = dict(STAT_MAPPINGS if mappings is None else mappings)
        self._descriptors = self._build_descriptors(meta_descriptors)

    def _build_descriptors(self, meta_descriptors) -> Tuple[MetricDescriptor, ...]:
        descriptors: Dict[str, MetricDescriptor] = {}
        for descriptor in list(meta_descriptors) + [m.descriptor for m in self.mappings.values()]:
            existing = descriptors.get(descriptor.name)
            if existing is None:
                descriptors[descriptor.name] = descriptor
            elif existing != descriptor:
                raise ValueError(f"Conflicting definitions for metric {descriptor.name}")
        return tuple(descriptors.values())

    def describe(self) -> Tuple[MetricDescriptor, ...]:
        """Every descriptor this mapper can produce samples for, in declaration order"""
        return self._descriptors

    def map(self, stat: ParsedStat) -> Optional[Sample]:
        """Convert one parsed stat into a sample

        Returns None for stats missing from the table.

        Raises:
            ParseError: the value could not be converted, or the key's labels do
                not fit the descriptor
        """
        mapping = self.mappings.get(stat.base_name)
        if mapping is None:
            return None

        descriptor = mapping.descriptor
        label_values = stat.label_values + mapping.const_labels
        if mapping.value_as_label:
            label_values += (stat.value,)
            value = 1.0
        else:
            try:
                value = mapping.convert(stat.value)
            except (ValueError, OverflowError) as e:
                raise ParseError(f"Invalid value for {stat.base_name}: {e}") from e

        if len(label_values) != len(descriptor.label_names):
            raise ParseError(f"{stat.base_name} yields {len(label_values)} label values, "
                             f"{descriptor.name} expects {len(descriptor.label_names)}")
        return Sample(descriptor.name, label_values, value)


def describe() -> Tuple[MetricDescriptor, ...]:
    """Descriptors of the default table"""
    return DEFAULT_MAPPER.describe()


DEFAULT_MAPPER = MetricMapper()
