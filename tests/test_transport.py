"""
Tests for StreamTransport and DatagramTransport against loopback fake devices.
"""

import asyncio
import json
import socket
import time

import pytest

from tplink_smarthome_protocol import (
    DatagramTransport,
    Endpoint,
    ProtocolTimeoutError,
    StreamTransport,
    TransportError,
    TransportKind,
    create_transport,
    encode_frame,
)

from conftest import PLUG_SYSINFO, sysinfo_response

SYSINFO_REQUEST = b'{"system":{"get_sysinfo":{}}}'


def _unused_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class TestCreateTransport:
    def test_selects_variant_by_kind(self):
        assert isinstance(create_transport(Endpoint('10.0.0.1', 9999, 'tcp')), StreamTransport)
        transport = create_transport(Endpoint('10.0.0.1', 9999, 'udp'))
        assert isinstance(transport, DatagramTransport)
        assert transport.one_shot


class TestStreamTransport:
    @pytest.mark.asyncio
    async def test_request_response(self, stream_device):
        async with StreamTransport(stream_device.endpoint) as transport:
            await transport.write(encode_frame(SYSINFO_REQUEST))
            plain = await transport.read(1.0)
        assert json.loads(plain) == sysinfo_response(PLUG_SYSINFO)
        assert stream_device.requests == [{"system": {"get_sysinfo": {}}}]

    @pytest.mark.asyncio
    async def test_connection_is_reused(self, stream_device):
        transport = StreamTransport(stream_device.endpoint)
        try:
            for _ in range(3):
                await transport.open(1.0)
                await transport.write(encode_frame(SYSINFO_REQUEST))
                await transport.read(1.0)
        finally:
            await transport.close()
        assert transport.connect_count == 1
        assert stream_device.connection_count == 1

    @pytest.mark.asyncio
    async def test_timeout_drops_connection(self, stream_device):
        stream_device.delays = [0.5]
        transport = StreamTransport(stream_device.endpoint)
        try:
            await transport.open(1.0)
            await transport.write(encode_frame(SYSINFO_REQUEST))
            start = time.monotonic()
            with pytest.raises(ProtocolTimeoutError) as exc_info:
                await transport.read(0.05)
            assert time.monotonic() - start < 0.4
            assert exc_info.value.endpoint == stream_device.endpoint
            assert not transport.is_open
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        transport = StreamTransport(Endpoint('127.0.0.1', _unused_tcp_port(), TransportKind.STREAM))
        with pytest.raises(TransportError):
            await transport.open(1.0)
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_peer_closes_mid_frame(self):
        async def handler(reader, writer):
            await reader.read(100)
            writer.write(b'\x00\x00\x00\x10\xd0')
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handler, '127.0.0.1', 0)
        port = server.sockets[0].getsockname()[1]
        try:
            transport = StreamTransport(Endpoint('127.0.0.1', port, TransportKind.STREAM))
            await transport.open(1.0)
            await transport.write(encode_frame(SYSINFO_REQUEST))
            with pytest.raises(TransportError):
                await transport.read(1.0)
            assert not transport.is_open
            await transport.close()
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_write_without_connection_raises(self):
        class NeverConnects(StreamTransport):
            async def open(self, timeout=None):
                pass

        transport = NeverConnects(Endpoint('127.0.0.1', 9999, TransportKind.STREAM))
        with pytest.raises(TransportError):
            await transport.write(encode_frame(SYSINFO_REQUEST))

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, stream_device):
        transport = StreamTransport(stream_device.endpoint)
        await transport.open(1.0)
        await transport.close()
        await transport.close()
        assert not transport.is_open


class TestDatagramTransport:
    @pytest.mark.asyncio
    async def test_request_response(self, udp_responders):
        responder = await udp_responders()
        transport = DatagramTransport(responder.endpoint)
        await transport.open(1.0)
        await transport.write(encode_frame(SYSINFO_REQUEST, TransportKind.DATAGRAM))
        plain = await transport.read(1.0)
        assert json.loads(plain) == sysinfo_response(PLUG_SYSINFO)
        # the socket is released after each exchange
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_timeout(self, udp_responders):
        responder = await udp_responders()
        responder.delays = [0.5]
        transport = DatagramTransport(responder.endpoint)
        await transport.open(1.0)
        await transport.write(encode_frame(SYSINFO_REQUEST, TransportKind.DATAGRAM))
        start = time.monotonic()
        with pytest.raises(ProtocolTimeoutError):
            await transport.read(0.05)
        assert time.monotonic() - start < 0.4
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_late_reply_goes_nowhere(self, udp_responders):
        """A reply to an abandoned exchange is never returned by the next exchange"""
        seq = [0]

        def responder_fn(request):
            seq[0] += 1
            return {"system": {"get_sysinfo": {"seq": seq[0]}}}

        responder = await udp_responders(responder=responder_fn)
        responder.delays = [0.15]
        transport = DatagramTransport(responder.endpoint)

        await transport.open(1.0)
        await transport.write(encode_frame(SYSINFO_REQUEST, TransportKind.DATAGRAM))
        with pytest.raises(ProtocolTimeoutError):
            await transport.read(0.05)

        await transport.open(1.0)
        await transport.write(encode_frame(SYSINFO_REQUEST, TransportKind.DATAGRAM))
        plain = await transport.read(1.0)
        assert json.loads(plain) == {"system": {"get_sysinfo": {"seq": 2}}}
        assert transport.generation == 2

    @pytest.mark.asyncio
    async def test_stale_generation_is_discarded(self):
        transport = DatagramTransport(Endpoint('127.0.0.1', 9999, TransportKind.DATAGRAM))
        loop = asyncio.get_running_loop()
        transport.generation = 2
        transport._reply = loop.create_future()
        transport._on_datagram(1, b'\xd0\xad', ('127.0.0.1', 9999))
        assert transport.discarded_count == 1
        assert not transport._reply.done()
        await transport.close()

    @pytest.mark.asyncio
    async def test_write_without_socket_raises(self):
        class NeverOpens(DatagramTransport):
            async def open(self, timeout=None):
                pass

        transport = NeverOpens(Endpoint('127.0.0.1', 9999, TransportKind.DATAGRAM))
        with pytest.raises(TransportError):
            await transport.write(encode_frame(SYSINFO_REQUEST, TransportKind.DATAGRAM))
