#!/usr/bin/env python3
"""
Exporter configuration

Settings come from an optional YAML file whose keys mirror the command line
flags; flags given on the command line win over file values.

Example::

    address: cache-01:11211
    timeout: 2.0
    pid_file: /run/memcached.pid
    listen_address: ":9150"
    telemetry_path: /metrics
    region: kr-central
    tls:
      enable: true
      cafile: /etc/memcached/ca.pem
      servername: cache-01.internal
"""

import logging
import ssl
from typing import Any, Dict, Optional, Tuple

import yaml

from memcached_exporter.errors import ConfigError
from memcached_exporter.transport import UNIX_SERVER_NAME, parse_address

DEFAULTS: Dict[str, Any] = {
    'address': 'localhost:11211',
    'timeout': 1.0,
    'pid_file': None,
    'listen_address': ':9150',
    'telemetry_path': '/metrics',
    'region': None,
    'log_level': 'INFO',
    'tls': {
        'enable': False,
        'certfile': None,
        'keyfile': None,
        'cafile': None,
        'servername': None,
        'skipverify': False,
    },
}

logger = logging.getLogger(__name__)


class TLSOptions:
    """Client TLS material for connecting to memcached"""

    def __init__(self, certfile: Optional[str] = None, keyfile: Optional[str] = None,
                 cafile: Optional[str] = None, server_name: Optional[str] = None,
                 skip_verify: bool = False):
        self.certfile = certfile
        self.keyfile = keyfile
        self.cafile = cafile
        self.server_name = server_name
        self.skip_verify = skip_verify

    def build_context(self) -> ssl.SSLContext:
        """Create the client SSL context; raises ConfigError on unreadable material"""
        try:
            context = ssl.create_default_context(cafile=self.cafile or None)
            if self.skip_verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            if self.certfile:
                context.load_cert_chain(self.certfile, self.keyfile or None)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to create TLS config: {e}") from e
        return context


class ExporterConfig:
    """Validated exporter settings"""

    def __init__(self, address: str = DEFAULTS['address'], timeout: float = DEFAULTS['timeout'],
                 pid_file: Optional[str] = None, listen_address: str = DEFAULTS['listen_address'],
                 telemetry_path: str = DEFAULTS['telemetry_path'], region: Optional[str] = None,
                 log_level: str = DEFAULTS['log_level'], tls: Optional[TLSOptions] = None):
        self.address = address
        self.timeout = timeout
        self.pid_file = pid_file
        self.listen_address = listen_address
        self.telemetry_path = telemetry_path
        self.region = region
        self.log_level = log_level
        self.tls = tls
        self.validate()

    def validate(self):
        if self.timeout <= 0:
            raise ConfigError(f"Timeout must be positive, got {self.timeout}")
        if not self.address.startswith('/'):
            try:
                parse_address(self.address)
            except ValueError as e:
                raise ConfigError(str(e)) from e
        if not self.telemetry_path.startswith('/'):
            raise ConfigError(f"Telemetry path must start with '/': {self.telemetry_path}")
        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR'):
            raise ConfigError(f"Unknown log level: {self.log_level}")
        self.listen_host_port()

    @property
    def default_labels(self) -> Dict[str, str]:
        return {'region': self.region} if self.region else {}

    @property
    def server_name(self) -> Optional[str]:
        """TLS server name, defaulting to the host part of the address (localhost for unix sockets)"""
        if self.tls is None:
            return None
        if self.tls.server_name:
            return self.tls.server_name
        if self.address.startswith('/'):
            return UNIX_SERVER_NAME
        return parse_address(self.address)[0]

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        return self.tls.build_context() if self.tls else None

    def listen_host_port(self) -> Tuple[str, int]:
        """Split the listen address; an empty host binds every interface"""
        host, sep, port = self.listen_address.rpartition(':')
        if not sep:
            raise ConfigError(f"Listen address must be [host]:port, got '{self.listen_address}'")
        try:
            return host.strip('[]'), int(port)
        except ValueError:
            raise ConfigError(f"Invalid listen port in '{self.listen_address}'") from None


def load_config_file(path: str) -> Dict[str, Any]:
    """Read a YAML configuration file"""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML configuration: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")
    if 'tls' in data and not isinstance(data['tls'], dict):
        raise ConfigError("'tls' must be a mapping")
    return data


def merge_settings(file_settings: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Layer defaults, file values and explicitly given overrides

    Override values of None mean "not given" and leave the lower layer alone.
    """
    settings = dict(DEFAULTS)
    settings['tls'] = dict(DEFAULTS['tls'])

    for layer in (file_settings, overrides):
        for key, value in layer.items():
            if value is None:
                continue
            if key == 'tls':
                settings['tls'].update({k: v for k, v in value.items() if v is not None})
            else:
                settings[key] = value
    return settings


def build_config(settings: Dict[str, Any]) -> ExporterConfig:
    """Create an ExporterConfig from merged settings"""
    unknown = set(settings) - set(DEFAULTS)
    if unknown:
        logger.warning(f"Ignoring unknown configuration keys: {', '.join(sorted(unknown))}")

    tls_settings = settings['tls']
    tls = None
    if tls_settings.get('enable'):
        tls = TLSOptions(
            certfile=tls_settings.get('certfile'),
            keyfile=tls_settings.get('keyfile'),
            cafile=tls_settings.get('cafile'),
            server_name=tls_settings.get('servername'),
            skip_verify=bool(tls_settings.get('skipverify')),
        )

    try:
        timeout = float(settings['timeout'])
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid timeout: {settings['timeout']!r}") from None

    return ExporterConfig(
        address=str(settings['address']),
        timeout=timeout,
        pid_file=settings.get('pid_file'),
        listen_address=str(settings['listen_address']),
        telemetry_path=str(settings['telemetry_path']),
        region=str(settings['region']) if settings.get('region') is not None else None,
        log_level=str(settings['log_level']).upper(),
        tls=tls,
    )
