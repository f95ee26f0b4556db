#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Endpoint -- The network identity of a single device: host, port and transport kind.

Endpoints are the key used to serialize commands to a device and to de-duplicate
discovery responses, so they are immutable and hashable.
"""

from __future__ import annotations

from enum import Enum

from .internal_types import *
from .constants import DEFAULT_PORT

class TransportKind(Enum):
    """The framing/transport used to exchange messages with a device."""
    STREAM = "tcp"
    """A persistent TCP connection; each message is preceded by a 4-byte length"""

    DATAGRAM = "udp"
    """One UDP datagram per message, with no length prefix"""

    @classmethod
    def parse(cls, value: Union[str, TransportKind]) -> TransportKind:
        """Accepts a TransportKind, or one of 'tcp', 'udp', 'stream', 'datagram' (case-insensitive)."""
        if isinstance(value, TransportKind):
            return value
        v = value.strip().lower()
        if v in ('tcp', 'stream'):
            return cls.STREAM
        if v in ('udp', 'datagram'):
            return cls.DATAGRAM
        raise ValueError(f"Unknown transport kind: {value!r}")

class Endpoint:
    host: str
    """The device hostname or IP address"""

    port: int
    """The device port (almost always 9999)"""

    transport_kind: TransportKind
    """The transport used to reach the device"""

    def __init__(
            self,
            host: str,
            port: int=DEFAULT_PORT,
            transport_kind: Union[str, TransportKind]=TransportKind.STREAM
          ) -> None:
        object.__setattr__(self, 'host', host)
        object.__setattr__(self, 'port', int(port))
        object.__setattr__(self, 'transport_kind', TransportKind.parse(transport_kind))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"Endpoint is immutable; cannot set {name}")

    @property
    def addr(self) -> HostAndPort:
        """The (host, port) tuple suitable for socket calls"""
        return (self.host, self.port)

    def with_transport(self, transport_kind: Union[str, TransportKind]) -> Endpoint:
        """Returns a copy of this endpoint that uses a different transport."""
        return Endpoint(self.host, self.port, transport_kind)

    def _key(self) -> Tuple[str, int, TransportKind]:
        return (self.host, self.port, self.transport_kind)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Endpoint):
            return False
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return f"{self.transport_kind.value}://{self.host}:{self.port}"

    def __repr__(self) -> str:
        return f"Endpoint({self.host!r}, {self.port}, {self.transport_kind.name})"
