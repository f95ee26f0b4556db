#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Type hints used internally by this package"""

from __future__ import annotations

from typing import (
    Any,
    AsyncContextManager,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Sequence,
    Set,
    TYPE_CHECKING,
    TextIO,
    Tuple,
    Type,
    TypeVar,
    Union,
    cast,
    overload,
)
from types import TracebackType
from typing_extensions import Self

Jsonable = Union[None, bool, int, float, str, List['Jsonable'], Dict[str, 'Jsonable']]
"""A type that can be serialized to JSON with json.dumps()"""

JsonableDict = Dict[str, Jsonable]
"""A dict that can be serialized to JSON with json.dumps()"""

JsonableTypes = (type(None), bool, int, float, str, list, dict)
"""A tuple of types usable with isinstance() to test for a Jsonable value"""

HostAndPort = Tuple[str, int]
"""An (ip_address_or_hostname, port) tuple as used by the socket module"""

__all__ = [
    'Any', 'AsyncContextManager', 'AsyncIterable', 'AsyncIterator', 'Awaitable', 'Callable',
    'Dict', 'Iterable', 'List', 'Mapping', 'MutableMapping', 'Optional', 'Sequence', 'Set',
    'TYPE_CHECKING', 'TextIO', 'Tuple', 'Type', 'TypeVar', 'Union', 'cast', 'overload',
    'TracebackType', 'Self',
    'Jsonable', 'JsonableDict', 'JsonableTypes', 'HostAndPort',
]
