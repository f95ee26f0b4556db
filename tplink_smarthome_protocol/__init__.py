# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package tplink_smarthome_protocol implements the local-network protocol spoken by TP-Link Kasa
smart home devices (plugs, switches, bulbs and cameras).

Devices listen on port 9999 for JSON commands, over TCP or UDP. Every payload is obfuscated
with a running XOR cipher (initial key 171); TCP messages carry a 4-byte big-endian length
prefix, while UDP messages are bare. Devices are discovered by broadcasting a sysinfo request
and collecting the replies.

The protocol is not publicly documented by TP-Link, but has been reverse-engineered by
several open source projects.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict

from .exceptions import (
    TplinkError,
    FramingError,
    DecodeError,
    ProtocolTimeoutError,
    TransportError,
    UnsupportedDeviceError,
    ResponseError,
  )

from .constants import DEFAULT_PORT, DEFAULT_TIMEOUT, DEFAULT_RESPONSE_WAIT_TIME
from .endpoint import Endpoint, TransportKind
from .codec import (
    encode,
    decode,
    encode_frame,
    decode_frame,
    split_stream_frame,
    read_stream_frame,
    serialize_command,
    parse_response,
  )
from .transport import DeviceTransport, StreamTransport, DatagramTransport, create_transport
from .command_queue import CommandQueue, CommandEnvelope, EndpointState
from .classifier import ClassifierRule, DEFAULT_RULES, classify, require_known_variant, extract_sys_info
from .status_tracker import StatusChange, StatusTracker, diff_status
from .discovery import (
    DeviceDiscovery,
    DiscoveryScan,
    DiscoveryResponse,
    DeviceDescriptor,
    DISCOVERY_PROBE,
    discover,
  )
from .device import Device, Plug, Bulb, Camera, UnknownDevice, DEVICE_CLASSES, create_device
from .config import Config, ConfigContext, ClientConfig
from .client import TplinkClient, process_response

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict',
    'TplinkError', 'FramingError', 'DecodeError', 'ProtocolTimeoutError', 'TransportError',
    'UnsupportedDeviceError', 'ResponseError',
    'DEFAULT_PORT', 'DEFAULT_TIMEOUT', 'DEFAULT_RESPONSE_WAIT_TIME',
    'Endpoint', 'TransportKind',
    'encode', 'decode', 'encode_frame', 'decode_frame', 'split_stream_frame', 'read_stream_frame',
    'serialize_command', 'parse_response',
    'DeviceTransport', 'StreamTransport', 'DatagramTransport', 'create_transport',
    'CommandQueue', 'CommandEnvelope', 'EndpointState',
    'ClassifierRule', 'DEFAULT_RULES', 'classify', 'require_known_variant', 'extract_sys_info',
    'StatusChange', 'StatusTracker', 'diff_status',
    'DeviceDiscovery', 'DiscoveryScan', 'DiscoveryResponse', 'DeviceDescriptor', 'DISCOVERY_PROBE', 'discover',
    'Device', 'Plug', 'Bulb', 'Camera', 'UnknownDevice', 'DEVICE_CLASSES', 'create_device',
    'Config', 'ConfigContext', 'ClientConfig',
    'TplinkClient', 'process_response',
]
