#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Settings for TplinkClient and discovery"""

from __future__ import annotations

from ..internal_types import *
from ..constants import DEFAULT_PORT, DEFAULT_TIMEOUT, DEFAULT_MAX_RETRIES, DEFAULT_RESPONSE_WAIT_TIME
from ..endpoint import TransportKind
from .base import Config

class ClientConfig(Config):
    """
    Example config file (durations are in milliseconds):

        {
          "timeout_ms": 5000,
          "max_retries": 2,
          "transport": "tcp",
          "port": 9999,
          "discovery_window_ms": 3000,
          "broadcast_address": "192.168.1.255",
          "targets": [ "192.168.1.20", "192.168.1.21:9999" ],
          "device_types": [ "plug", "bulb" ],
          "exclude_macs": [ "50:C7:BF:01:23:AB" ]
        }
    """

    timeout: float = DEFAULT_TIMEOUT
    """Per-attempt command deadline, in seconds"""

    max_retries: int = DEFAULT_MAX_RETRIES
    transport_kind: TransportKind = TransportKind.STREAM
    port: int = DEFAULT_PORT

    discovery_window: float = DEFAULT_RESPONSE_WAIT_TIME
    """How long discovery collects responses, in seconds"""

    broadcast_address: Optional[str] = None
    """If set, discovery broadcasts only to this address instead of every local subnet"""

    probe_interval: Optional[float] = None
    targets: List[str]
    """Hosts to probe individually instead of broadcasting. Empty means broadcast."""

    device_types: Optional[List[str]] = None
    exclude_macs: List[str]

    def __init__(self) -> None:
        self.targets = []
        self.exclude_macs = []

    def bake(self) -> None:
        timeout_ms = self.get_cfg_property_float('timeout_ms', DEFAULT_TIMEOUT * 1000.0)
        if timeout_ms <= 0.0:
            raise ValueError(f"ClientConfig: timeout_ms must be positive, got {timeout_ms}")
        self.timeout = timeout_ms / 1000.0

        self.max_retries = self.get_cfg_property_int('max_retries', DEFAULT_MAX_RETRIES)
        if self.max_retries < 0:
            raise ValueError(f"ClientConfig: max_retries must be >= 0, got {self.max_retries}")

        self.transport_kind = TransportKind.parse(self.get_cfg_property_str('transport', TransportKind.STREAM.value))
        self.port = self.get_cfg_property_int('port', DEFAULT_PORT)

        window_ms = self.get_cfg_property_float('discovery_window_ms', DEFAULT_RESPONSE_WAIT_TIME * 1000.0)
        if window_ms <= 0.0:
            raise ValueError(f"ClientConfig: discovery_window_ms must be positive, got {window_ms}")
        self.discovery_window = window_ms / 1000.0

        self.broadcast_address = self.get_cfg_property_str('broadcast_address', None)
        probe_interval_ms = self.get_cfg_property_float('probe_interval_ms', None)
        self.probe_interval = None if probe_interval_ms is None else probe_interval_ms / 1000.0
        self.targets = self.get_cfg_property_str_list('targets', [])
        self.device_types = self.get_cfg_property_str_list('device_types', None)
        self.exclude_macs = self.get_cfg_property_str_list('exclude_macs', [])

    def with_overrides(self, **overrides: Any) -> ClientConfig:
        """Returns a copy with some baked attributes replaced, e.g. with_overrides(timeout=0.5).

        "transport" is accepted as an alias for transport_kind."""
        result = ClientConfig()
        result.__dict__.update(self.__dict__)
        result.targets = list(self.targets)
        result.exclude_macs = list(self.exclude_macs)
        for name, value in overrides.items():
            if name == 'transport':
                name = 'transport_kind'
            if name == 'transport_kind':
                value = TransportKind.parse(value)
            if not hasattr(ClientConfig, name) and not name in ('targets', 'exclude_macs'):
                raise TypeError(f"ClientConfig: unknown setting {name!r}")
            setattr(result, name, value)
        return result
