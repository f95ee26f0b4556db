#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

from __future__ import annotations

from .internal_types import *

class TplinkError(Exception):
    """Base class for all error exceptions defined by this package."""
    pass

class FramingError(TplinkError):
    """A stream frame is not yet complete.

    Stream reads may be partial, so this means "wait for more bytes", never a
    broken connection. `needed` is the number of additional bytes required
    before another parse attempt can make progress."""
    needed: int

    def __init__(self, needed: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Incomplete stream frame; {needed} more byte(s) required"
        super().__init__(msg)
        self.needed = needed

class DecodeError(TplinkError):
    """A decoded payload is not a valid JSON object."""
    raw: bytes

    def __init__(self, msg: str, raw: bytes=b''):
        super().__init__(msg)
        self.raw = raw

class ProtocolTimeoutError(TplinkError):
    """A deadline elapsed with no usable response from a device."""
    endpoint: Any
    timeout: Optional[float]

    def __init__(self, endpoint: Any, timeout: Optional[float]=None, msg: Optional[str]=None):
        if msg is None:
            msg = f"Timed out after {timeout} seconds waiting for {endpoint}"
        super().__init__(msg)
        self.endpoint = endpoint
        self.timeout = timeout

class TransportError(TplinkError):
    """A connection to a device was refused, reset, or closed mid-frame."""
    endpoint: Any

    def __init__(self, endpoint: Any, msg: str):
        super().__init__(msg)
        self.endpoint = endpoint

class UnsupportedDeviceError(TplinkError):
    """A status payload did not classify as any known device variant."""
    status: Optional[Mapping[str, Any]]

    def __init__(self, msg: str, status: Optional[Mapping[str, Any]]=None):
        super().__init__(msg)
        self.status = status

class ResponseError(TplinkError):
    """A device answered a command with a missing section or a nonzero err_code."""
    response: Any
    module: Optional[str]
    method: Optional[str]

    def __init__(self, msg: str, response: Any, module: Optional[str]=None, method: Optional[str]=None):
        super().__init__(msg)
        self.response = response
        self.module = module
        self.method = method
