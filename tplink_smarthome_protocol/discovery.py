#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DeviceDiscovery -- Finds devices on the local network by fanning out a sysinfo probe.

  1. Encode the probe once, then send it to every target: a single datagram per broadcast
     address, or one unicast probe per explicitly listed host (datagram through the shared
     discovery socket, or a concurrent TCP exchange per host).
  2. Collect every response that arrives before the window elapses, in arrival order.
     Undecodable responses and unreachable targets are logged and skipped; they never end a scan.
  3. Classify each response into a variant tag, de-duplicate by endpoint (most recent response
     wins), and return the resulting DeviceDescriptors.

Discovery deliberately bypasses CommandQueue: no device has prior state, and probes to different
hosts must not wait on each other.
"""

from __future__ import annotations

import asyncio
import socket
import time
import datetime

from .internal_types import *
from .pkg_logging import logger
from .constants import DEFAULT_PORT, DEFAULT_RESPONSE_WAIT_TIME
from .endpoint import Endpoint, TransportKind
from .exceptions import TplinkError, DecodeError, TransportError
from .codec import encode, decode, encode_frame, serialize_command, parse_response
from .classifier import ClassifierRule, classify, extract_sys_info
from .transport import StreamTransport
from .util import get_broadcast_addresses, normalize_mac

DISCOVERY_PROBE: JsonableDict = {
    "system": {"get_sysinfo": {}},
    "emeter": {"get_realtime": {}},
    "smartlife.iot.common.emeter": {"get_realtime": {}},
}
"""The default probe. Every device answers system.get_sysinfo; the emeter requests are answered
   by devices with energy monitoring and ignored (or answered with an error) by others."""

MAX_QUEUE_SIZE = 1000

Target = Union[str, HostAndPort, Endpoint]
"""A discovery target: "host", "host:port", (host, port), or an Endpoint"""

class DiscoveryResponse:
    endpoint: Endpoint
    """The endpoint the response came from"""

    status: JsonableDict
    """The decoded response payload"""

    monotonic_time: float
    """The local time (in seconds) since an arbitrary point in the past at which
       the response was received, as returned by time.monotonic()."""

    utc_time: datetime.datetime
    """The UTC time at which the response was received."""

    def __init__(self, endpoint: Endpoint, status: JsonableDict, monotonic_time: Optional[float]=None) -> None:
        self.endpoint = endpoint
        self.status = status
        self.monotonic_time = time.monotonic() if monotonic_time is None else monotonic_time
        self.utc_time = datetime.datetime.now(datetime.timezone.utc)

    @property
    def sys_info(self) -> Mapping[str, Any]:
        return extract_sys_info(self.status)

    def __str__(self) -> str:
        return f"DiscoveryResponse({self.endpoint}, {self.status})"

    def __repr__(self) -> str:
        return str(self)

class DeviceDescriptor:
    endpoint: Endpoint
    variant_tag: str
    raw_status: JsonableDict
    monotonic_time: float

    def __init__(self, endpoint: Endpoint, variant_tag: str, raw_status: JsonableDict, monotonic_time: Optional[float]=None) -> None:
        self.endpoint = endpoint
        self.variant_tag = variant_tag
        self.raw_status = raw_status
        self.monotonic_time = time.monotonic() if monotonic_time is None else monotonic_time

    @classmethod
    def from_response(cls, response: DiscoveryResponse, rules: Optional[Sequence[ClassifierRule]]=None) -> DeviceDescriptor:
        return cls(response.endpoint, classify(response.status, rules), response.status, response.monotonic_time)

    @property
    def sys_info(self) -> Mapping[str, Any]:
        return extract_sys_info(self.raw_status)

    @property
    def host(self) -> str:
        return self.endpoint.host

    @property
    def port(self) -> int:
        return self.endpoint.port

    @property
    def mac(self) -> Optional[str]:
        """The device MAC address, normalized to 12 uppercase hex digits, if reported."""
        sys_info = self.sys_info
        for key in ('mac', 'mic_mac', 'ethernet_mac'):
            value = sys_info.get(key)
            if isinstance(value, str) and value != '':
                return normalize_mac(value)
        return None

    @property
    def alias(self) -> Optional[str]:
        value = self.sys_info.get('alias')
        return value if isinstance(value, str) else None

    @property
    def model(self) -> Optional[str]:
        value = self.sys_info.get('model')
        return value if isinstance(value, str) else None

    @property
    def device_id(self) -> Optional[str]:
        value = self.sys_info.get('deviceId')
        return value if isinstance(value, str) else None

    def to_jsonable(self) -> JsonableDict:
        return {
            "host": self.endpoint.host,
            "port": self.endpoint.port,
            "transport": self.endpoint.transport_kind.value,
            "variant": self.variant_tag,
            "alias": self.alias,
            "model": self.model,
            "mac": self.mac,
            "status": self.raw_status,
        }

    def __str__(self) -> str:
        return f"DeviceDescriptor({self.endpoint}, {self.variant_tag}, alias={self.alias!r}, model={self.model!r})"

    def __repr__(self) -> str:
        return str(self)

def parse_target(target: Target, port: int=DEFAULT_PORT, transport_kind: TransportKind=TransportKind.DATAGRAM) -> Endpoint:
    """Converts a discovery target into an Endpoint, filling in the default port and transport."""
    if isinstance(target, Endpoint):
        return target
    if isinstance(target, tuple):
        host, target_port = target
        return Endpoint(host, target_port, transport_kind)
    host = target
    if host.count(':') == 1:
        host, port_str = host.split(':', 1)
        port = int(port_str)
    return Endpoint(host, port, transport_kind)

class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio datagram transport and a DiscoveryScan."""
    scan: DiscoveryScan

    def __init__(self, scan: DiscoveryScan):
        self.scan = scan

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.scan._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        # Typically an ICMP error for one unreachable target; the scan continues.
        logger.debug(f"Discovery socket error (ignored): {exc}")

class DiscoveryScan(
        AsyncContextManager['DiscoveryScan'],
        AsyncIterable[DiscoveryResponse]
      ):
    """An object that manages a single discovery window and all of the received responses
       within an AsyncContextManager/AsyncIterable interface."""

    discovery: DeviceDiscovery
    targets: Optional[List[Endpoint]]
    """The unicast targets, or None to broadcast"""

    response_wait_time: float
    end_time: float = 0.0
    stopped: bool = False

    decode_failures: int = 0
    """The number of responses dropped because they could not be decoded"""

    queue: asyncio.Queue[Optional[Tuple[Endpoint, bytes, float]]]

    _datagram_transport: Optional[asyncio.DatagramTransport] = None
    _datagram_probe: bytes = b''
    _stream_frame: bytes = b''
    _probe_tasks: List[asyncio.Task[None]]
    _resend_task: Optional[asyncio.Task[None]] = None

    def __init__(
            self,
            discovery: DeviceDiscovery,
            targets: Optional[Iterable[Target]]=None,
            response_wait_time: Optional[float]=None,
            transport_kind: Optional[Union[str, TransportKind]]=None,
          ):
        """Create an async context manager/iterable that sends discovery probes and returns the responses
        as they arrive.

        Parameters:
            discovery:           The DeviceDiscovery providing the probe, port and broadcast addresses.
            targets:             Hosts to probe individually. If None (the default), the probe is broadcast.
            response_wait_time:  The window (in seconds) during which responses are collected. Defaults to
                                    discovery.response_wait_time.
            transport_kind:      The transport used for unicast targets given as strings or tuples. Defaults
                                    to discovery.transport_kind.

        Usage:
            async with DiscoveryScan(discovery, ...) as scan:
                async for response in scan:
                    print(response.sys_info)
                    # Call scan.stop() (or break) to end the window early
        """
        self.discovery = discovery
        kind = discovery.transport_kind if transport_kind is None else TransportKind.parse(transport_kind)
        self.targets = None if targets is None else [ parse_target(t, discovery.port, kind) for t in targets ]
        self.response_wait_time = discovery.response_wait_time if response_wait_time is None else response_wait_time
        self._probe_tasks = []

    @property
    def is_broadcast(self) -> bool:
        return self.targets is None

    def _datagram_destinations(self) -> List[HostAndPort]:
        if self.targets is None:
            return [ (address, self.discovery.port) for address in self.discovery.get_broadcast_addresses() ]
        return [ t.addr for t in self.targets if t.transport_kind == TransportKind.DATAGRAM ]

    def _stream_targets(self) -> List[Endpoint]:
        if self.targets is None:
            return []
        return [ t for t in self.targets if t.transport_kind == TransportKind.STREAM ]

    async def __aenter__(self) -> DiscoveryScan:
        self.queue = asyncio.Queue(MAX_QUEUE_SIZE)
        plain = serialize_command(self.discovery.probe)
        self._datagram_probe = encode(plain)
        self._stream_frame = encode_frame(plain, TransportKind.STREAM)
        try:
            destinations = self._datagram_destinations()
            if len(destinations) > 0:
                await self._open_datagram_socket()
            self.end_time = time.monotonic() + self.response_wait_time
            self._send_datagram_probes(destinations)
            for endpoint in self._stream_targets():
                self._probe_tasks.append(asyncio.create_task(self._probe_stream(endpoint)))
            if self.discovery.probe_interval is not None and self.discovery.probe_interval > 0.0 and len(destinations) > 0:
                self._resend_task = asyncio.create_task(self._run_resend_task(destinations))
        except BaseException:
            # A call to __aenter__ that raises an exception will not be paired with a call to __aexit__
            await self._shutdown()
            raise
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self._shutdown()
        return False

    async def _open_datagram_socket(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise TransportError(None, f"Unable to create discovery socket: {e}") from e
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self.discovery.bind_address, 0))
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DiscoveryProtocol(self),
                sock=sock
              )
        except BaseException as e:
            sock.close()
            if isinstance(e, OSError):
                raise TransportError(None, f"Unable to bind discovery socket: {e}") from e
            raise
        # Note: asyncio datagram transports do not inherit from asyncio.DatagramTransport
        self._datagram_transport = transport # type: ignore[assignment]
        logger.debug(f"Discovery socket bound to {sock.getsockname()}")

    def _send_datagram_probes(self, destinations: List[HostAndPort]) -> None:
        transport = self._datagram_transport
        if transport is None:
            return
        for addr in destinations:
            logger.debug(f"Sending discovery probe to {addr[0]}:{addr[1]}")
            try:
                transport.sendto(self._datagram_probe, addr)
            except OSError as e:
                logger.warning(f"Unable to send discovery probe to {addr[0]}:{addr[1]}: {e}")

    async def _run_resend_task(self, destinations: List[HostAndPort]) -> None:
        interval = self.discovery.probe_interval
        assert interval is not None and interval > 0.0
        while not self.stopped:
            remaining = self.end_time - time.monotonic()
            if remaining <= interval:
                break
            await asyncio.sleep(interval)
            self._send_datagram_probes(destinations)

    async def _probe_stream(self, endpoint: Endpoint) -> None:
        transport = StreamTransport(endpoint)
        try:
            await transport.open(max(self.end_time - time.monotonic(), 0.001))
            await transport.write(self._stream_frame)
            plain = await transport.read(max(self.end_time - time.monotonic(), 0.001))
            self._enqueue(endpoint, plain)
        except TplinkError as e:
            logger.debug(f"Discovery probe to {endpoint} failed: {e}")
        finally:
            await transport.close()

    def _on_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        endpoint = Endpoint(addr[0], addr[1], TransportKind.DATAGRAM)
        logger.debug(f"Received {len(data)}-byte discovery response from {endpoint}")
        self._enqueue(endpoint, decode(data))

    def _enqueue(self, endpoint: Endpoint, plain: bytes) -> None:
        if self.stopped:
            return
        try:
            self.queue.put_nowait((endpoint, plain, time.monotonic()))
        except asyncio.QueueFull:
            logger.warning(f"Queue full, dropping discovery response from {endpoint}")

    def stop(self) -> None:
        """Ends the discovery window early. Responses already received are still delivered."""
        if not self.stopped:
            self.stopped = True
            try:
                # wake up any waiting tasks
                self.queue.put_nowait(None)
            except asyncio.QueueFull:
                # queue is full so waiters will wake up soon
                pass

    async def iter_responses(self) -> AsyncIterator[DiscoveryResponse]:
        while True:
            if self.stopped and self.queue.empty():
                break
            remaining = self.end_time - time.monotonic()
            if remaining > 0.0:
                try:
                    item = await asyncio.wait_for(self.queue.get(), remaining)
                except asyncio.TimeoutError:
                    continue
            else:
                # the window is over, but responses that arrived inside it are still delivered
                self.stopped = True
                try:
                    item = self.queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
            if item is None:
                break
            endpoint, plain, monotonic_time = item
            if monotonic_time > self.end_time:
                logger.debug(f"Ignoring discovery response from {endpoint} received after the window closed")
                continue
            try:
                status = parse_response(plain)
            except DecodeError as e:
                self.decode_failures += 1
                logger.warning(f"Dropping undecodable discovery response from {endpoint}: {e}")
                continue
            yield DiscoveryResponse(endpoint, status, monotonic_time)

    def __aiter__(self) -> AsyncIterator[DiscoveryResponse]:
        return self.iter_responses()

    async def _shutdown(self) -> None:
        self.stopped = True
        tasks: List[asyncio.Task[None]] = list(self._probe_tasks)
        if self._resend_task is not None:
            tasks.append(self._resend_task)
            self._resend_task = None
        self._probe_tasks = []
        for task in tasks:
            task.cancel()
        if len(tasks) > 0:
            # cancellation of an in-flight probe is silent
            await asyncio.gather(*tasks, return_exceptions=True)
        transport = self._datagram_transport
        self._datagram_transport = None
        if transport is not None:
            transport.close()
        self.discovery._scan_finished(self)

class DeviceDiscovery:
    """
    A discovery client that can:

      1. Broadcast a probe to the local subnets, or unicast it to a list of hosts
      2. Receive and decode probe responses from devices
      3. Classify, de-duplicate and filter the responses received within a configurable window
    """

    port: int = DEFAULT_PORT
    """The device port to probe"""

    broadcast_addresses: Optional[List[str]] = None
    """The broadcast addresses to probe. If None, the local interfaces' broadcast addresses are used."""

    bind_address: str = ''
    """The local address for the discovery socket. '' binds to all interfaces."""

    response_wait_time: float = DEFAULT_RESPONSE_WAIT_TIME
    """The amount of time (in seconds) to wait for responses to come in."""

    probe: JsonableDict
    rules: Optional[List[ClassifierRule]] = None
    transport_kind: TransportKind = TransportKind.DATAGRAM
    """The transport used to probe unicast targets"""

    probe_interval: Optional[float] = None
    """If set, datagram probes are re-sent at this interval (in seconds) until the window closes."""

    device_types: Optional[Set[str]] = None
    """If set, only descriptors with one of these variant tags are returned."""

    exclude_macs: Set[str]
    """Normalized MAC addresses of devices to leave out of results."""

    _active_scans: Set[DiscoveryScan]

    def __init__(
            self,
            port: int=DEFAULT_PORT,
            broadcast_addresses: Optional[Iterable[str]]=None,
            response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
            probe: Optional[Mapping[str, Any]]=None,
            rules: Optional[Iterable[ClassifierRule]]=None,
            transport_kind: Union[str, TransportKind]=TransportKind.DATAGRAM,
            probe_interval: Optional[float]=None,
            device_types: Optional[Iterable[str]]=None,
            exclude_macs: Optional[Iterable[str]]=None,
            bind_address: str='',
          ) -> None:
        self.port = port
        self.broadcast_addresses = None if broadcast_addresses is None else list(broadcast_addresses)
        self.response_wait_time = response_wait_time
        self.probe = dict(DISCOVERY_PROBE if probe is None else probe)
        self.rules = None if rules is None else list(rules)
        self.transport_kind = TransportKind.parse(transport_kind)
        self.probe_interval = probe_interval
        self.device_types = None if device_types is None else set(device_types)
        self.exclude_macs = set() if exclude_macs is None else { normalize_mac(m) for m in exclude_macs }
        self.bind_address = bind_address
        self._active_scans = set()

    def get_broadcast_addresses(self) -> List[str]:
        if self.broadcast_addresses is None:
            self.broadcast_addresses = get_broadcast_addresses()
            logger.debug(f"Using broadcast addresses {self.broadcast_addresses}")
        return self.broadcast_addresses

    def scan(
            self,
            targets: Optional[Iterable[Target]]=None,
            response_wait_time: Optional[float]=None,
            transport_kind: Optional[Union[str, TransportKind]]=None,
          ) -> DiscoveryScan:
        """Create an async context manager/iterable that sends the probe and returns raw responses
           as they arrive. No classification, de-duplication or filtering is applied.

        Usage:
            async with discovery.scan(...) as scan:
                async for response in scan:
                    print(response.endpoint, response.sys_info)
        """
        scan = DiscoveryScan(self, targets=targets, response_wait_time=response_wait_time, transport_kind=transport_kind)
        self._active_scans.add(scan)
        return scan

    def _scan_finished(self, scan: DiscoveryScan) -> None:
        self._active_scans.discard(scan)

    def stop(self) -> None:
        """Ends every scan in progress early; discover() calls return what they collected so far."""
        for scan in list(self._active_scans):
            scan.stop()

    def is_wanted(self, descriptor: DeviceDescriptor) -> bool:
        """Applies the device_types and exclude_macs filters."""
        if self.device_types is not None and not descriptor.variant_tag in self.device_types:
            return False
        mac = descriptor.mac
        if mac is not None and mac in self.exclude_macs:
            return False
        return True

    async def discover(
            self,
            targets: Optional[Iterable[Target]]=None,
            response_wait_time: Optional[float]=None,
            transport_kind: Optional[Union[str, TransportKind]]=None,
          ) -> List[DeviceDescriptor]:
        """Runs a full discovery window and returns one DeviceDescriptor per responding endpoint.

        If an endpoint responds more than once, the most recently received response is used. Results
        are in the order endpoints were first heard from. The window always runs to completion unless
        stop() is called, in which case the descriptors collected so far are returned.
        """
        descriptors: Dict[Endpoint, DeviceDescriptor] = {}
        async with self.scan(targets=targets, response_wait_time=response_wait_time, transport_kind=transport_kind) as scan:
            async for response in scan:
                descriptor = DeviceDescriptor.from_response(response, self.rules)
                if response.endpoint in descriptors:
                    logger.debug(f"Replacing earlier response from {response.endpoint}")
                descriptors[response.endpoint] = descriptor
        result = [ d for d in descriptors.values() if self.is_wanted(d) ]
        logger.debug(f"Discovery found {len(result)} device(s) ({len(descriptors)} before filtering)")
        return result

async def discover(
        targets: Optional[Iterable[Target]]=None,
        probe: Optional[Mapping[str, Any]]=None,
        response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
        **kwargs: Any
      ) -> List[DeviceDescriptor]:
    """Convenience wrapper: creates a DeviceDiscovery with the given options and runs one discovery window."""
    discovery = DeviceDiscovery(probe=probe, response_wait_time=response_wait_time, **kwargs)
    return await discovery.discover(targets=targets)
