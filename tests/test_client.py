"""
Tests for TplinkClient, process_response and the device wrappers.
"""

import pytest

from tplink_smarthome_protocol import (
    Bulb,
    Camera,
    ClientConfig,
    DeviceDescriptor,
    Endpoint,
    Plug,
    ResponseError,
    TplinkClient,
    TransportKind,
    UnknownDevice,
    UnsupportedDeviceError,
    process_response,
)

from conftest import BULB_SYSINFO, CAMERA_SYSINFO, PLUG_SYSINFO, sysinfo_response


class TestProcessResponse:
    def test_single_method_returns_result(self):
        command = {"system": {"get_sysinfo": {}}}
        assert process_response(command, sysinfo_response(PLUG_SYSINFO)) == PLUG_SYSINFO

    def test_multiple_methods_return_whole_response(self):
        command = {"system": {"get_sysinfo": {}}, "emeter": {"get_realtime": {}}}
        response = {
            "system": {"get_sysinfo": {"err_code": 0}},
            "emeter": {"get_realtime": {"power": 1.5, "err_code": 0}},
        }
        assert process_response(command, response) == response

    def test_missing_module(self):
        with pytest.raises(ResponseError) as exc_info:
            process_response({"emeter": {"get_realtime": {}}}, {"system": {}})
        assert exc_info.value.module == "emeter"

    def test_module_error(self):
        response = {"emeter": {"err_code": -1, "err_msg": "module not support"}}
        with pytest.raises(ResponseError) as exc_info:
            process_response({"emeter": {"get_realtime": {}}}, response)
        assert exc_info.value.module == "emeter"
        assert exc_info.value.method is None
        assert exc_info.value.response == response

    def test_method_error(self):
        response = {"system": {"set_relay_state": {"err_code": -2, "err_msg": "member not support"}}}
        with pytest.raises(ResponseError) as exc_info:
            process_response({"system": {"set_relay_state": {"state": 1}}}, response)
        assert exc_info.value.method == "set_relay_state"
        assert "member not support" in str(exc_info.value)

    def test_missing_method(self):
        with pytest.raises(ResponseError):
            process_response({"system": {"get_sysinfo": {}}}, {"system": {}})


def _route(fake_network, endpoint, sys_info):
    fake_network.device(endpoint).responder = lambda request: sysinfo_response(sys_info)


class TestTplinkClient:
    @pytest.mark.asyncio
    async def test_get_sys_info(self, fake_network):
        async with TplinkClient(transport_factory=fake_network) as client:
            sys_info = await client.get_sys_info("10.0.0.1")
        assert sys_info == PLUG_SYSINFO
        endpoint = Endpoint("10.0.0.1", 9999, TransportKind.STREAM)
        assert fake_network.devices[endpoint].requests == [{"system": {"get_sysinfo": {}}}]

    @pytest.mark.asyncio
    async def test_overrides_select_transport_and_port(self, fake_network):
        async with TplinkClient(transport_factory=fake_network, transport="udp", port=20002, timeout=0.5) as client:
            await client.send("10.0.0.1", {"system": {"get_sysinfo": {}}})
            assert client.command_queue.timeout == 0.5
        assert list(fake_network.devices.keys()) == [Endpoint("10.0.0.1", 20002, TransportKind.DATAGRAM)]

    @pytest.mark.asyncio
    async def test_identify(self, fake_network):
        _route(fake_network, Endpoint("10.0.0.2"), BULB_SYSINFO)
        _route(fake_network, Endpoint("10.0.0.3"), CAMERA_SYSINFO)
        _route(fake_network, Endpoint("10.0.0.4"), {"type": "IOT.THERMOSTAT"})
        async with TplinkClient(transport_factory=fake_network) as client:
            assert await client.identify("10.0.0.1") == "plug"
            assert await client.identify("10.0.0.2") == "bulb"
            assert await client.identify("10.0.0.3") == "camera"
            assert await client.identify("10.0.0.4") == "unknown"
            with pytest.raises(UnsupportedDeviceError):
                await client.identify("10.0.0.4", require_known=True)

    @pytest.mark.asyncio
    async def test_get_device(self, fake_network):
        _route(fake_network, Endpoint("10.0.0.2"), BULB_SYSINFO)
        _route(fake_network, Endpoint("10.0.0.3"), CAMERA_SYSINFO)
        _route(fake_network, Endpoint("10.0.0.4"), {"type": "IOT.THERMOSTAT"})
        async with TplinkClient(transport_factory=fake_network) as client:
            plug = await client.get_device("10.0.0.1")
            bulb = await client.get_device("10.0.0.2")
            camera = await client.get_device("10.0.0.3")
            unknown = await client.get_device("10.0.0.4")
        assert isinstance(plug, Plug)
        assert isinstance(bulb, Bulb)
        assert isinstance(camera, Camera)
        assert isinstance(unknown, UnknownDevice)
        assert plug.alias == "Kitchen Plug"
        assert plug.mac == "50C7BF0123AB"
        assert bulb.module_name("system") == "smartlife.iot.common.system"
        assert plug.module_name("system") == "system"

    @pytest.mark.asyncio
    async def test_get_device_from_descriptor(self, fake_network):
        descriptor = DeviceDescriptor(
            Endpoint("10.0.0.2", 9999, TransportKind.DATAGRAM), "bulb", sysinfo_response(BULB_SYSINFO)
        )
        async with TplinkClient(transport_factory=fake_network) as client:
            device = await client.get_device(descriptor)
        assert isinstance(device, Bulb)
        assert device.endpoint == Endpoint("10.0.0.2", 9999, TransportKind.STREAM)
        assert device.alias == "Desk Lamp"
        # no query was needed
        assert fake_network.devices == {}

    @pytest.mark.asyncio
    async def test_device_send_command_uses_variant_module(self, fake_network):
        endpoint = Endpoint("10.0.0.2")
        device_side = fake_network.device(endpoint)
        device_side.responder = lambda request: (
            {"smartlife.iot.common.system": {"get_sysinfo": dict(BULB_SYSINFO, alias="Renamed")}}
        )
        descriptor = DeviceDescriptor(endpoint, "bulb", sysinfo_response(BULB_SYSINFO))
        async with TplinkClient(transport_factory=fake_network) as client:
            bulb = await client.get_device(descriptor)
            sys_info = await bulb.get_sys_info()
        assert device_side.requests == [{"smartlife.iot.common.system": {"get_sysinfo": {}}}]
        assert sys_info["alias"] == "Renamed"
        assert bulb.alias == "Renamed"

    @pytest.mark.asyncio
    async def test_change_handler_sees_state_changes(self, fake_network):
        endpoint = Endpoint("10.0.0.1")
        states = [0, 0, 1]
        fake_network.device(endpoint).responder = lambda request: sysinfo_response(
            dict(PLUG_SYSINFO, relay_state=states.pop(0))
        )
        changes_seen = []

        async def handler(changed_endpoint, changes, status):
            changes_seen.append((changed_endpoint, [(c.key, c.old_value, c.new_value) for c in changes]))

        async with TplinkClient(transport_factory=fake_network, watched_keys=["relay_state"]) as client:
            client.add_change_handler(handler)
            for _ in range(3):
                await client.get_sys_info(endpoint)
        assert changes_seen == [(endpoint, [("relay_state", 0, 1)])]

    @pytest.mark.asyncio
    async def test_send_command_raises_response_error(self, fake_network):
        endpoint = Endpoint("10.0.0.1")
        fake_network.device(endpoint).responder = lambda request: {
            "emeter": {"err_code": -1, "err_msg": "module not support"}
        }
        async with TplinkClient(transport_factory=fake_network) as client:
            with pytest.raises(ResponseError):
                await client.send_command(endpoint, '{"emeter":{"get_realtime":{}}}')

    def test_discovery_uses_config(self):
        config = ClientConfig().with_overrides(
            port=20000, discovery_window=1.5, broadcast_address="192.168.7.255", device_types=["plug"]
        )
        client = TplinkClient(config)
        discovery = client.discovery()
        assert discovery.port == 20000
        assert discovery.response_wait_time == 1.5
        assert discovery.broadcast_addresses == ["192.168.7.255"]
        assert discovery.device_types == {"plug"}

    @pytest.mark.asyncio
    async def test_discover_uses_configured_targets(self, udp_responders):
        responder = await udp_responders()
        config = ClientConfig().with_overrides(
            targets=[f"127.0.0.1:{responder.port}"], discovery_window=0.3
        )
        async with TplinkClient(config) as client:
            descriptors = await client.discover()
        assert len(descriptors) == 1
        assert descriptors[0].variant_tag == "plug"
