# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

DEFAULT_PORT = 9999
"""The TCP and UDP port on which devices listen for commands and discovery probes."""

BROADCAST_ADDRESS = "255.255.255.255"
"""The limited broadcast address used for discovery when no interface broadcast address is known."""

INITIAL_KEY = 171
"""The starting value of the running XOR key used to obfuscate payloads."""

STREAM_HEADER_LENGTH = 4
"""Length of the big-endian unsigned payload length that precedes each stream (TCP) frame."""

MAX_DATAGRAM_SIZE = 65507
"""The largest payload that fits in a single UDP datagram."""

DEFAULT_TIMEOUT = 10.0
"""The default per-attempt deadline (in seconds) for a command."""

DEFAULT_MAX_RETRIES = 0
"""The default number of times a command is retried after a timeout or transport failure."""

DEFAULT_RESPONSE_WAIT_TIME = 3.0
"""The default amount of time (in seconds) to collect discovery responses."""

UNKNOWN_VARIANT = "unknown"
"""Variant tag assigned to a status that matches no classifier rule."""
