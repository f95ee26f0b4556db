"""
Shared fixtures for tplink_smarthome_protocol tests.

Provides an instrumented in-memory transport (for queue ordering and retry tests) and
loopback fake devices speaking the real wire protocol over TCP and UDP.
"""

from __future__ import annotations

import asyncio
import json

import pytest
import pytest_asyncio

from tplink_smarthome_protocol.internal_types import *
from tplink_smarthome_protocol import (
    DeviceTransport,
    Endpoint,
    TransportKind,
    ProtocolTimeoutError,
    TransportError,
    decode,
    decode_frame,
    encode,
    encode_frame,
    read_stream_frame,
)

PLUG_SYSINFO: Dict[str, Any] = {
    "sw_ver": "1.5.4 Build 180815 Rel.121440",
    "hw_ver": "2.0",
    "type": "IOT.SMARTPLUGSWITCH",
    "model": "HS110(US)",
    "mac": "50:C7:BF:01:23:AB",
    "deviceId": "8006ABCDEF0123456789",
    "alias": "Kitchen Plug",
    "relay_state": 1,
    "on_time": 42,
    "err_code": 0,
}

BULB_SYSINFO: Dict[str, Any] = {
    "sw_ver": "1.8.6 Build 180809 Rel.091659",
    "hw_ver": "1.0",
    "mic_type": "IOT.SMARTBULB",
    "model": "LB130(US)",
    "mic_mac": "50C7BF0A1B2C",
    "deviceId": "8012ABCDEF0123456789",
    "alias": "Desk Lamp",
    "light_state": {"on_off": 1, "brightness": 80, "hue": 0, "saturation": 0, "color_temp": 2700},
    "err_code": 0,
}

CAMERA_SYSINFO: Dict[str, Any] = {
    "sw_ver": "2.2.4",
    "hw_ver": "1.0",
    "mic_type": "IOT.IPCAMERA",
    "model": "KC200(US)",
    "mac": "50-C7-BF-0F-0E-0D",
    "alias": "Porch Camera",
    # cameras report a light_state too, which must not make them bulbs
    "light_state": {"on_off": 0},
    "err_code": 0,
}

def sysinfo_response(sys_info: Mapping[str, Any]) -> Dict[str, Any]:
    return {"system": {"get_sysinfo": dict(sys_info)}}

Responder = Callable[[Dict[str, Any]], Union[Mapping[str, Any], bytes]]
"""Computes a fake device's reply to a request. bytes are sent as the (unencoded) plaintext."""

def default_responder(request: Dict[str, Any]) -> Mapping[str, Any]:
    return sysinfo_response(PLUG_SYSINFO)

def _render(reply: Union[Mapping[str, Any], bytes]) -> bytes:
    if isinstance(reply, bytes):
        return reply
    return json.dumps(reply).encode('utf-8')

class FakeDevice:
    """The device side of a FakeTransport. Records every request and the peak number of
       requests in flight at once."""

    requests: List[Dict[str, Any]]
    responder: Responder
    delay: float = 0.0
    silent_count: int = 0
    """The number of upcoming requests that are never answered"""

    refuse_count: int = 0
    """The number of upcoming open() calls that fail with TransportError"""

    active: int = 0
    max_active: int = 0
    open_count: int = 0
    close_count: int = 0

    def __init__(self, responder: Optional[Responder]=None, delay: float=0.0) -> None:
        self.requests = []
        self.responder = default_responder if responder is None else responder
        self.delay = delay

class FakeTransport(DeviceTransport):
    device: FakeDevice
    _open: bool = False
    _request: Optional[Dict[str, Any]] = None

    def __init__(self, endpoint: Endpoint, device: FakeDevice) -> None:
        super().__init__(endpoint)
        self.device = device
        self.one_shot = endpoint.transport_kind == TransportKind.DATAGRAM

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, timeout: Optional[float]=None) -> None:
        if self._open:
            return
        self.device.open_count += 1
        if self.device.refuse_count > 0:
            self.device.refuse_count -= 1
            raise TransportError(self.endpoint, "Connection refused")
        self._open = True

    async def write(self, frame: bytes) -> None:
        request = json.loads(decode_frame(frame, self.endpoint.transport_kind))
        self.device.requests.append(request)
        self.device.active += 1
        self.device.max_active = max(self.device.max_active, self.device.active)
        self._request = request

    async def read(self, timeout: Optional[float]=None) -> bytes:
        request = self._request
        assert request is not None
        self._request = None
        try:
            if self.device.silent_count > 0:
                self.device.silent_count -= 1
                await asyncio.sleep(timeout if timeout is not None else 3600.0)
                raise ProtocolTimeoutError(self.endpoint, timeout)
            if self.device.delay > 0.0:
                await asyncio.sleep(self.device.delay)
            return _render(self.device.responder(request))
        finally:
            self.device.active -= 1

    async def close(self) -> None:
        if self._open:
            self._open = False
            self.device.close_count += 1

class FakeNetwork:
    """A transport factory that routes each endpoint to its own FakeDevice."""

    devices: Dict[Endpoint, FakeDevice]
    transports: List[FakeTransport]

    def __init__(self) -> None:
        self.devices = {}
        self.transports = []

    def device(self, endpoint: Endpoint) -> FakeDevice:
        result = self.devices.get(endpoint)
        if result is None:
            result = FakeDevice()
            self.devices[endpoint] = result
        return result

    def __call__(self, endpoint: Endpoint) -> FakeTransport:
        transport = FakeTransport(endpoint, self.device(endpoint))
        self.transports.append(transport)
        return transport

@pytest.fixture
def fake_network() -> FakeNetwork:
    return FakeNetwork()

class StreamDeviceServer:
    """A loopback TCP server that answers framed commands like a real device."""

    responder: Responder
    delays: List[float]
    """Per-request reply delays, consumed in order; requests beyond the list are answered at once"""

    requests: List[Dict[str, Any]]
    connection_count: int = 0
    server: Optional[asyncio.base_events.Server] = None
    port: int = 0

    def __init__(self, responder: Optional[Responder]=None) -> None:
        self.responder = default_responder if responder is None else responder
        self.delays = []
        self.requests = []
        self._writers: Set[asyncio.StreamWriter] = set()

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint('127.0.0.1', self.port, TransportKind.STREAM)

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            for writer in list(self._writers):
                writer.close()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connection_count += 1
        self._writers.add(writer)
        try:
            while True:
                try:
                    plain = await read_stream_frame(reader)
                except asyncio.IncompleteReadError:
                    break
                request = json.loads(plain)
                self.requests.append(request)
                reply = _render(self.responder(request))
                if len(self.delays) > 0:
                    await asyncio.sleep(self.delays.pop(0))
                writer.write(encode_frame(reply, TransportKind.STREAM))
                await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

class _UdpResponderProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: UdpDeviceResponder) -> None:
        self.owner = owner

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.owner.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.owner._on_request(data, addr)

class UdpDeviceResponder:
    """A loopback UDP socket that answers datagram commands (or discovery probes) like a real device."""

    replies: List[Union[Mapping[str, Any], bytes]]
    """Replies sent for every request, in order; empty means answer with responder()"""

    responder: Responder
    delays: List[float]
    requests: List[Dict[str, Any]]
    reply_interval: float = 0.02
    transport: Optional[asyncio.DatagramTransport] = None
    port: int = 0

    def __init__(
            self,
            responder: Optional[Responder]=None,
            replies: Optional[List[Union[Mapping[str, Any], bytes]]]=None
          ) -> None:
        self.responder = default_responder if responder is None else responder
        self.replies = [] if replies is None else list(replies)
        self.delays = []
        self.requests = []
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint('127.0.0.1', self.port, TransportKind.DATAGRAM)

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: _UdpResponderProtocol(self), local_addr=('127.0.0.1', 0))
        assert self.transport is not None
        self.port = self.transport.get_extra_info('sockname')[1]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.transport is not None:
            self.transport.close()

    def _on_request(self, data: bytes, addr: Tuple[str, int]) -> None:
        request = json.loads(decode(data))
        self.requests.append(request)
        delay = self.delays.pop(0) if len(self.delays) > 0 else 0.0
        replies = self.replies if len(self.replies) > 0 else [ self.responder(request) ]
        self._tasks.append(asyncio.create_task(self._send_replies(replies, addr, delay)))

    async def _send_replies(self, replies: List[Union[Mapping[str, Any], bytes]], addr: Tuple[str, int], delay: float) -> None:
        if delay > 0.0:
            await asyncio.sleep(delay)
        for i, reply in enumerate(replies):
            if i > 0:
                await asyncio.sleep(self.reply_interval)
            assert self.transport is not None
            self.transport.sendto(encode(_render(reply)), addr)

@pytest_asyncio.fixture
async def stream_device() -> AsyncIterator[StreamDeviceServer]:
    server = StreamDeviceServer()
    await server.start()
    try:
        yield server
    finally:
        await server.stop()

@pytest_asyncio.fixture
async def udp_responders() -> AsyncIterator[Callable[..., Awaitable[UdpDeviceResponder]]]:
    """A factory fixture: `await udp_responders(responder=..., replies=[...])` starts a responder
       on its own loopback port; all are stopped at teardown."""
    started: List[UdpDeviceResponder] = []

    async def factory(
            responder: Optional[Responder]=None,
            replies: Optional[List[Union[Mapping[str, Any], bytes]]]=None
          ) -> UdpDeviceResponder:
        result = UdpDeviceResponder(responder=responder, replies=replies)
        await result.start()
        started.append(result)
        return result

    try:
        yield factory
    finally:
        for r in started:
            await r.stop()
