#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
CommandQueue -- Serializes commands per device endpoint and applies deadline and retry policy.

  1. At most one command per endpoint is ever between "encode/send" and "response received".
     Commands for the same endpoint complete in submission order; commands for different
     endpoints run concurrently and independently.
  2. Every attempt carries a deadline. Timeouts and transport failures (refused, reset) are
     retried up to max_retries times; the caller sees either a parsed result or one terminal error.
  3. A response that arrives after its attempt was abandoned is never delivered to a newer attempt.
     The transports guarantee this: a stream connection is dropped when a read times out, and a
     datagram socket is closed after every exchange.
"""

from __future__ import annotations

import asyncio
import time

from .internal_types import *
from .pkg_logging import logger
from .constants import DEFAULT_TIMEOUT, DEFAULT_MAX_RETRIES
from .endpoint import Endpoint
from .exceptions import TplinkError, DecodeError, ProtocolTimeoutError, TransportError
from .codec import encode_frame, serialize_command, parse_response
from .transport import DeviceTransport, create_transport

TransportFactory = Callable[[Endpoint], DeviceTransport]
"""A callable that creates the transport used for a newly seen endpoint."""

Command = Union[str, bytes, Mapping[str, Any]]
"""A command as accepted by CommandQueue.submit: JSON text, UTF-8 JSON bytes, or a JSON-able mapping."""

class CommandEnvelope:
    """A single submitted command and its policy. Lives until the command resolves."""

    endpoint: Endpoint
    payload: bytes
    """The plaintext JSON payload"""

    timeout: float
    """The per-attempt deadline, in seconds"""

    max_retries: int
    """The number of additional attempts allowed after a timeout or transport failure"""

    generation: int = 0
    """The generation of the attempt currently in flight; 0 before the first attempt"""

    submitted_monotonic_time: float

    def __init__(self, endpoint: Endpoint, payload: bytes, timeout: float, max_retries: int) -> None:
        if timeout <= 0.0:
            raise ValueError(f"Command timeout must be positive, got {timeout}")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.endpoint = endpoint
        self.payload = payload
        self.timeout = timeout
        self.max_retries = max_retries
        self.submitted_monotonic_time = time.monotonic()

    def __str__(self) -> str:
        return f"CommandEnvelope({self.endpoint}, {len(self.payload)} bytes, timeout={self.timeout}, max_retries={self.max_retries})"

    def __repr__(self) -> str:
        return str(self)

class EndpointState:
    """Everything the queue keeps for one endpoint: the pending slot, the owned transport, and
       the attempt generation counter. Created on the first command for the endpoint and torn down
       by CommandQueue.close_endpoint() or CommandQueue.close(). Once closed, a state is never
       used again; commands that were waiting on its slot move to the endpoint's new state."""

    endpoint: Endpoint
    transport: DeviceTransport

    slot: asyncio.Lock
    """The pending slot. asyncio.Lock wakes waiters in FIFO order, so no command overtakes another."""

    generation: int = 0
    """The number of attempts made on this endpoint, for logging and diagnostics"""

    closed: bool = False

    in_flight: int = 0
    """The number of commands currently between send and response (never more than 1)"""

    completed: int = 0
    failed: int = 0

    def __init__(self, endpoint: Endpoint, transport: DeviceTransport) -> None:
        self.endpoint = endpoint
        self.transport = transport
        self.slot = asyncio.Lock()

    def begin_attempt(self, envelope: CommandEnvelope) -> int:
        self.generation += 1
        envelope.generation = self.generation
        return self.generation

    def __str__(self) -> str:
        return f"EndpointState({self.endpoint}, generation={self.generation}, completed={self.completed}, failed={self.failed})"

class CommandQueue(AsyncContextManager['CommandQueue']):
    """Per-endpoint serialized command execution with timeout and retry."""

    timeout: float
    """The default per-attempt deadline (in seconds)"""

    max_retries: int
    """The default number of retries"""

    transport_factory: TransportFactory

    _endpoints: Dict[Endpoint, EndpointState]
    _closed: bool = False

    def __init__(
            self,
            transport_factory: Optional[TransportFactory]=None,
            timeout: float=DEFAULT_TIMEOUT,
            max_retries: int=DEFAULT_MAX_RETRIES
          ) -> None:
        self.transport_factory = create_transport if transport_factory is None else transport_factory
        self.timeout = timeout
        self.max_retries = max_retries
        self._endpoints = {}

    @property
    def endpoints(self) -> List[Endpoint]:
        """The endpoints that currently have state in this queue"""
        return list(self._endpoints.keys())

    def get_endpoint_state(self, endpoint: Endpoint) -> EndpointState:
        """Returns the state for an endpoint, creating it (and its transport) on first use."""
        if self._closed:
            raise TplinkError("CommandQueue is closed")
        state = self._endpoints.get(endpoint)
        if state is None:
            state = EndpointState(endpoint, self.transport_factory(endpoint))
            self._endpoints[endpoint] = state
            logger.debug(f"Created {state}")
        return state

    async def submit_raw(
            self,
            endpoint: Endpoint,
            payload: Command,
            timeout: Optional[float]=None,
            max_retries: Optional[int]=None
          ) -> str:
        """Sends a command and returns the device's decoded JSON response text, unparsed.

        Raises ProtocolTimeoutError or TransportError once retries are exhausted, and DecodeError
        if the response is not valid UTF-8."""
        plain = await self._submit(endpoint, payload, timeout, max_retries)
        try:
            return plain.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(f"Response from {endpoint} is not valid UTF-8: {e}", plain) from e

    async def submit(
            self,
            endpoint: Endpoint,
            payload: Command,
            timeout: Optional[float]=None,
            max_retries: Optional[int]=None
          ) -> JsonableDict:
        """Sends a command and returns the device's parsed JSON response.

        Parameters:
            endpoint:     The device to send to. Commands to the same endpoint are executed one at a time,
                            in the order submitted.
            payload:      The command, as JSON text, UTF-8 JSON bytes, or a JSON-able mapping.
            timeout:      The deadline (in seconds) for each attempt. Defaults to self.timeout.
            max_retries:  How many times to retry after a timeout or transport failure. Defaults to
                            self.max_retries.

        Raises:
            ProtocolTimeoutError: no response within the deadline on every attempt
            TransportError:       the connection failed on every attempt
            DecodeError:          the response was not a JSON object (not retried)
        """
        plain = await self._submit(endpoint, payload, timeout, max_retries)
        return parse_response(plain)

    async def _submit(
            self,
            endpoint: Endpoint,
            payload: Command,
            timeout: Optional[float],
            max_retries: Optional[int]
          ) -> bytes:
        envelope = CommandEnvelope(
            endpoint,
            serialize_command(payload),
            self.timeout if timeout is None else timeout,
            self.max_retries if max_retries is None else max_retries,
          )
        frame = encode_frame(envelope.payload, endpoint.transport_kind)
        while True:
            state = self.get_endpoint_state(endpoint)
            async with state.slot:
                if state.closed:
                    # the endpoint was closed while we waited; start over on its replacement
                    continue
                try:
                    result = await self._run_attempts(state, envelope, frame)
                except BaseException:
                    state.failed += 1
                    raise
                state.completed += 1
                return result

    async def _run_attempts(self, state: EndpointState, envelope: CommandEnvelope, frame: bytes) -> bytes:
        last_error: Optional[TplinkError] = None
        for attempt in range(envelope.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retrying command to {envelope.endpoint} (attempt {attempt + 1} of {envelope.max_retries + 1}) after: {last_error}")
            state.begin_attempt(envelope)
            try:
                return await self._attempt(state, frame, envelope.timeout)
            except (ProtocolTimeoutError, TransportError) as e:
                await state.transport.reset()
                last_error = e
        assert last_error is not None
        logger.debug(f"Command to {envelope.endpoint} failed after {envelope.max_retries + 1} attempt(s): {last_error}")
        raise last_error

    async def _attempt(self, state: EndpointState, frame: bytes, timeout: float) -> bytes:
        transport = state.transport
        deadline = time.monotonic() + timeout
        state.in_flight += 1
        try:
            await transport.open(timeout)
            await transport.write(frame)
            remaining = deadline - time.monotonic()
            if remaining <= 0.0:
                raise ProtocolTimeoutError(state.endpoint, timeout)
            return await transport.read(remaining)
        finally:
            state.in_flight -= 1
            if transport.one_shot:
                await transport.close()

    async def close_endpoint(self, endpoint: Endpoint) -> None:
        """Waits for the command in progress on the endpoint to finish, then closes its transport and
           forgets its state. Commands still waiting for the endpoint are run on a fresh state, or fail
           with TplinkError if the whole queue has been closed."""
        state = self._endpoints.get(endpoint)
        if state is None:
            return
        async with state.slot:
            if state.closed:
                return
            state.closed = True
            if self._endpoints.get(endpoint) is state:
                del self._endpoints[endpoint]
            await state.transport.close()
        logger.debug(f"Closed {state}")

    async def close(self) -> None:
        """Closes all endpoint transports. Further submissions raise TplinkError."""
        self._closed = True
        endpoints = list(self._endpoints.keys())
        for endpoint in endpoints:
            await self.close_endpoint(endpoint)

    async def __aenter__(self) -> CommandQueue:
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.close()
        return False
