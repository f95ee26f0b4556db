#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Thin per-variant device wrappers created from discovery results or a sysinfo query.

Each variant differs only in the module namespace it uses on the wire (for example, plugs
answer "system" while bulbs and cameras answer "smartlife.iot.common.system"). Commands are
issued through the owning client's CommandQueue, so they are serialized with every other
command to the same endpoint.
"""

from __future__ import annotations

from .internal_types import *
from .pkg_logging import logger
from .constants import UNKNOWN_VARIANT
from .endpoint import Endpoint
from .classifier import extract_sys_info
from .util import normalize_mac

if TYPE_CHECKING:
    from .client import TplinkClient

class Device:
    variant_tag: str = UNKNOWN_VARIANT

    api_modules: Dict[str, str] = {
        "system": "system",
        "cloud": "cnCloud",
        "schedule": "schedule",
        "timesetting": "time",
        "emeter": "emeter",
        "netif": "netif",
    }
    """Maps logical module names to the module names this variant answers on the wire"""

    client: TplinkClient
    endpoint: Endpoint
    sys_info: Dict[str, Any]
    """The most recently retrieved sysinfo"""

    def __init__(self, client: TplinkClient, endpoint: Endpoint, sys_info: Mapping[str, Any]) -> None:
        self.client = client
        self.endpoint = endpoint
        self.sys_info = dict(sys_info)

    def module_name(self, logical_name: str) -> str:
        """Returns the on-wire module name for a logical module (e.g., "system")."""
        result = self.api_modules.get(logical_name)
        if result is None:
            raise KeyError(f"{type(self).__name__} has no module {logical_name!r}")
        return result

    async def send(self, payload: Union[str, bytes, Mapping[str, Any]], timeout: Optional[float]=None) -> JsonableDict:
        """Sends a raw command to this device and returns the parsed response."""
        return await self.client.send(self.endpoint, payload, timeout=timeout)

    async def send_command(
            self,
            logical_module: str,
            method: str,
            params: Optional[Mapping[str, Any]]=None,
            timeout: Optional[float]=None
          ) -> Any:
        """Sends a single-method command to a logical module and returns the method's result."""
        command = { self.module_name(logical_module): { method: {} if params is None else dict(params) } }
        return await self.client.send_command(self.endpoint, command, timeout=timeout)

    async def get_sys_info(self, timeout: Optional[float]=None) -> Dict[str, Any]:
        """Fetches the current sysinfo from the device and caches it."""
        result = await self.send_command("system", "get_sysinfo", timeout=timeout)
        self.sys_info = dict(extract_sys_info(result) if isinstance(result, Mapping) else {})
        await self.client.status_tracker.update(self.endpoint, self.sys_info)
        logger.debug(f"Refreshed sysinfo for {self}")
        return self.sys_info

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

    @property
    def mac(self) -> Optional[str]:
        for key in ('mac', 'mic_mac', 'ethernet_mac'):
            value = self.sys_info.get(key)
            if isinstance(value, str) and value != '':
                return normalize_mac(value)
        return None

    def __str__(self) -> str:
        return f"{type(self).__name__}({self.endpoint}, alias={self.alias!r})"

    def __repr__(self) -> str:
        return str(self)

class Plug(Device):
    variant_tag = "plug"

class Bulb(Device):
    variant_tag = "bulb"

    api_modules = {
        "system": "smartlife.iot.common.system",
        "cloud": "smartlife.iot.common.cloud",
        "schedule": "smartlife.iot.common.schedule",
        "timesetting": "smartlife.iot.common.timesetting",
        "emeter": "smartlife.iot.common.emeter",
        "netif": "netif",
        "lightingservice": "smartlife.iot.smartbulb.lightingservice",
    }

class Camera(Device):
    variant_tag = "camera"

    api_modules = {
        "system": "smartlife.iot.common.system",
        "cloud": "smartlife.iot.common.cloud",
        "schedule": "smartlife.iot.common.schedule",
        "timesetting": "smartlife.iot.common.timesetting",
        "emeter": "smartlife.iot.common.emeter",
        "netif": "netif",
    }

class UnknownDevice(Device):
    variant_tag = UNKNOWN_VARIANT

DEVICE_CLASSES: Dict[str, Type[Device]] = {
    cls.variant_tag: cls for cls in (Plug, Bulb, Camera, UnknownDevice)
}
"""Dispatch table from variant tag to device class"""

def create_device(client: TplinkClient, endpoint: Endpoint, variant_tag: str, sys_info: Mapping[str, Any]) -> Device:
    """Instantiates the device class registered for a variant tag (UnknownDevice if none is)."""
    cls = DEVICE_CLASSES.get(variant_tag, UnknownDevice)
    return cls(client, endpoint, sys_info)
