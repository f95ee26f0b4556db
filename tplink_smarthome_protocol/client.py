#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
TplinkClient -- The application-facing entry point: sends commands, classifies devices, and runs discovery.

The client owns a single CommandQueue (so commands to one device are never interleaved, no
matter which device object issued them) and a single StatusTracker (so every sysinfo result,
whether from a direct query or a device object, feeds the same change notifications).
"""

from __future__ import annotations

from .internal_types import *
from .pkg_logging import logger
from .endpoint import Endpoint
from .exceptions import ResponseError
from .command_queue import CommandQueue, TransportFactory, Command
from .codec import serialize_command, parse_response
from .classifier import ClassifierRule, classify, require_known_variant, extract_sys_info
from .status_tracker import StatusTracker, StatusChangeHandler
from .discovery import DeviceDiscovery, DeviceDescriptor, Target
from .device import Device, create_device
from .config import ClientConfig

SYSINFO_COMMAND: JsonableDict = { "system": { "get_sysinfo": {} } }

def process_response(command: Mapping[str, Any], response: Mapping[str, Any]) -> Any:
    """Validates a device response against the command that produced it.

    Every module and method named in the command must be present in the response, and every
    method result that carries an err_code must report 0. If the command named exactly one
    method, that method's result is returned; otherwise the whole response is returned.

    Raises ResponseError on the first missing section or nonzero err_code.
    """
    results: List[Any] = []
    for module, methods in command.items():
        module_response = response.get(module)
        if not isinstance(module_response, Mapping):
            raise ResponseError(f"Module {module!r} not present in response", response, module=module)
        module_err_code = module_response.get('err_code')
        if module_err_code is not None and module_err_code != 0:
            msg = module_response.get('err_msg', 'module not supported')
            raise ResponseError(f"{module}: err_code {module_err_code}: {msg}", response, module=module)
        method_names = list(methods.keys()) if isinstance(methods, Mapping) else []
        for method in method_names:
            method_response = module_response.get(method)
            if method_response is None:
                raise ResponseError(f"Method {module}.{method} not present in response", response, module=module, method=method)
            if isinstance(method_response, Mapping):
                err_code = method_response.get('err_code')
                if err_code is not None and err_code != 0:
                    msg = method_response.get('err_msg', '')
                    raise ResponseError(f"{module}.{method}: err_code {err_code}: {msg}", response, module=module, method=method)
            results.append(method_response)
    if len(results) == 1:
        return results[0]
    return dict(response)

class TplinkClient(AsyncContextManager['TplinkClient']):
    config: ClientConfig
    command_queue: CommandQueue
    status_tracker: StatusTracker
    rules: Optional[List[ClassifierRule]] = None

    def __init__(
            self,
            config: Optional[ClientConfig]=None,
            transport_factory: Optional[TransportFactory]=None,
            rules: Optional[Iterable[ClassifierRule]]=None,
            watched_keys: Optional[Iterable[str]]=None,
            **overrides: Any
          ) -> None:
        """Create a client.

        Parameters:
            config:             Baked settings. Defaults to ClientConfig() defaults.
            transport_factory:  Creates the transport for each new endpoint. Defaults to a
                                  stream or datagram transport according to the endpoint.
            rules:              Classifier rules, most specific first. Defaults to the built-in rules.
            watched_keys:       The sysinfo keys whose changes are reported to change handlers.
                                  Defaults to all keys.
            overrides:          Individual ClientConfig attributes to override (e.g., timeout=0.5).
        """
        if config is None:
            config = ClientConfig()
        if len(overrides) > 0:
            config = config.with_overrides(**overrides)
        self.config = config
        self.rules = None if rules is None else list(rules)
        self.command_queue = CommandQueue(
            transport_factory=transport_factory,
            timeout=config.timeout,
            max_retries=config.max_retries,
          )
        self.status_tracker = StatusTracker(watched_keys=watched_keys)

    def endpoint(self, target: Union[str, Endpoint], port: Optional[int]=None) -> Endpoint:
        """Returns the endpoint for a host using this client's default port and transport."""
        if isinstance(target, Endpoint):
            return target
        return Endpoint(target, self.config.port if port is None else port, self.config.transport_kind)

    async def send(
            self,
            target: Union[str, Endpoint],
            payload: Command,
            timeout: Optional[float]=None,
            max_retries: Optional[int]=None
          ) -> JsonableDict:
        """Sends a command and returns the parsed response without validating it."""
        return await self.command_queue.submit(self.endpoint(target), payload, timeout=timeout, max_retries=max_retries)

    async def send_command(
            self,
            target: Union[str, Endpoint],
            command: Command,
            timeout: Optional[float]=None,
            max_retries: Optional[int]=None
          ) -> Any:
        """Sends a command and validates the response with process_response()."""
        if not isinstance(command, Mapping):
            command = parse_response(serialize_command(command))
        response = await self.send(target, command, timeout=timeout, max_retries=max_retries)
        return process_response(command, response)

    async def get_sys_info(self, target: Union[str, Endpoint], timeout: Optional[float]=None) -> Dict[str, Any]:
        """Queries a device's sysinfo, records it with the status tracker, and returns it."""
        endpoint = self.endpoint(target)
        result = await self.send_command(endpoint, SYSINFO_COMMAND, timeout=timeout)
        sys_info = dict(extract_sys_info(result)) if isinstance(result, Mapping) else {}
        await self.status_tracker.update(endpoint, sys_info)
        return sys_info

    async def identify(self, target: Union[str, Endpoint], require_known: bool=False, timeout: Optional[float]=None) -> str:
        """Queries a device's sysinfo and returns its variant tag.

        If require_known is True, raises UnsupportedDeviceError instead of returning "unknown"."""
        sys_info = await self.get_sys_info(target, timeout=timeout)
        if require_known:
            return require_known_variant(sys_info, self.rules)
        return classify(sys_info, self.rules)

    async def get_device(
            self,
            target: Union[str, Endpoint, DeviceDescriptor],
            timeout: Optional[float]=None
          ) -> Device:
        """Returns a device object for a discovery result, or for a host (queried for its sysinfo first)."""
        if isinstance(target, DeviceDescriptor):
            endpoint = Endpoint(target.host, target.port, self.config.transport_kind)
            return create_device(self, endpoint, target.variant_tag, target.sys_info)
        endpoint = self.endpoint(target)
        sys_info = await self.get_sys_info(endpoint, timeout=timeout)
        device = create_device(self, endpoint, classify(sys_info, self.rules), sys_info)
        logger.debug(f"Created {device}")
        return device

    def add_change_handler(self, handler: StatusChangeHandler) -> int:
        return self.status_tracker.add_change_handler(handler)

    def remove_change_handler(self, i: int) -> None:
        self.status_tracker.remove_change_handler(i)

    def discovery(self, **kwargs: Any) -> DeviceDiscovery:
        """Creates a DeviceDiscovery from this client's settings. Keyword arguments override them."""
        config = self.config
        options: Dict[str, Any] = dict(
            port=config.port,
            broadcast_addresses=None if config.broadcast_address is None else [ config.broadcast_address ],
            response_wait_time=config.discovery_window,
            rules=self.rules,
            probe_interval=config.probe_interval,
            device_types=config.device_types,
            exclude_macs=config.exclude_macs,
          )
        options.update(kwargs)
        return DeviceDiscovery(**options)

    async def discover(
            self,
            targets: Optional[Iterable[Target]]=None,
            response_wait_time: Optional[float]=None,
            **kwargs: Any
          ) -> List[DeviceDescriptor]:
        """Runs one discovery window. Probes the configured targets if there are any, otherwise broadcasts."""
        if targets is None and len(self.config.targets) > 0:
            targets = self.config.targets
        return await self.discovery(**kwargs).discover(targets=targets, response_wait_time=response_wait_time)

    async def close(self) -> None:
        await self.command_queue.close()

    async def __aenter__(self) -> TplinkClient:
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.close()
        return False
