#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
StatusTracker -- Remembers the last known status of each endpoint and notifies subscribers of changes.

Changes are computed by an explicit structural diff of the previous snapshot against each newly
decoded status. Which top-level keys count as "state" is a policy of the tracker (watched_keys),
not something baked into the diff.
"""

from __future__ import annotations

import copy
import time

from .internal_types import *
from .pkg_logging import logger
from .endpoint import Endpoint

StatusPath = Tuple[str, ...]

_MISSING: Any = object()

class StatusChange:
    endpoint: Optional[Endpoint]
    path: StatusPath
    """The key path of the changed leaf, e.g. ('light_state', 'on_off')"""

    old_value: Any
    """The previous value, or None if the key was added"""

    new_value: Any
    """The new value, or None if the key was removed"""

    added: bool
    removed: bool
    monotonic_time: float

    def __init__(
            self,
            path: StatusPath,
            old_value: Any,
            new_value: Any,
            endpoint: Optional[Endpoint]=None,
            added: bool=False,
            removed: bool=False
          ) -> None:
        self.path = path
        self.old_value = old_value
        self.new_value = new_value
        self.endpoint = endpoint
        self.added = added
        self.removed = removed
        self.monotonic_time = time.monotonic()

    @property
    def key(self) -> str:
        """The dotted path of the changed leaf"""
        return '.'.join(self.path)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, StatusChange):
            return False
        return (self.endpoint, self.path, self.old_value, self.new_value, self.added, self.removed) == \
               (other.endpoint, other.path, other.old_value, other.new_value, other.added, other.removed)

    def __str__(self) -> str:
        return f"StatusChange({self.endpoint}: {self.key}: {self.old_value!r} -> {self.new_value!r})"

    def __repr__(self) -> str:
        return str(self)

def _diff(old: Any, new: Any, path: StatusPath, endpoint: Optional[Endpoint], changes: List[StatusChange]) -> None:
    if isinstance(old, Mapping) and isinstance(new, Mapping):
        for k in old:
            if k not in new:
                changes.append(StatusChange(path + (str(k),), old[k], None, endpoint=endpoint, removed=True))
        for k in new:
            if k in old:
                _diff(old[k], new[k], path + (str(k),), endpoint, changes)
            else:
                changes.append(StatusChange(path + (str(k),), None, new[k], endpoint=endpoint, added=True))
    elif old != new:
        changes.append(StatusChange(path, old, new, endpoint=endpoint))

def diff_status(
        old: Mapping[str, Any],
        new: Mapping[str, Any],
        keys: Optional[Iterable[str]]=None,
        endpoint: Optional[Endpoint]=None
      ) -> List[StatusChange]:
    """Returns one StatusChange per differing leaf between two status mappings.

    Nested mappings are compared key by key; any other values (including lists) are compared
    whole. If keys is given, only those top-level keys are compared.
    """
    changes: List[StatusChange] = []
    if keys is None:
        _diff(old, new, (), endpoint, changes)
    else:
        for k in keys:
            old_v = old.get(k, _MISSING)
            new_v = new.get(k, _MISSING)
            if old_v is _MISSING and new_v is _MISSING:
                continue
            if old_v is _MISSING:
                changes.append(StatusChange((k,), None, new_v, endpoint=endpoint, added=True))
            elif new_v is _MISSING:
                changes.append(StatusChange((k,), old_v, None, endpoint=endpoint, removed=True))
            else:
                _diff(old_v, new_v, (k,), endpoint, changes)
    return changes

StatusChangeHandler = Callable[[Endpoint, List[StatusChange], Mapping[str, Any]], Awaitable[None]]
"""A callback for status changes: (endpoint, changes, new_status)."""

class StatusTracker:
    watched_keys: Optional[List[str]]
    """The top-level sysinfo keys that count as device state. If None, every key does."""

    change_handlers: Dict[int, StatusChangeHandler]
    """Handlers called when an endpoint's status changes, indexed by ID number."""

    i_next_change_handler: int = 0

    _snapshots: Dict[Endpoint, Dict[str, Any]]

    def __init__(self, watched_keys: Optional[Iterable[str]]=None) -> None:
        self.watched_keys = None if watched_keys is None else list(watched_keys)
        self.change_handlers = {}
        self._snapshots = {}

    def add_change_handler(self, handler: StatusChangeHandler) -> int:
        """Adds a handler to be called when a tracked endpoint's status changes. Returns its ID."""
        i = self.i_next_change_handler
        self.i_next_change_handler += 1
        self.change_handlers[i] = handler
        return i

    def remove_change_handler(self, i: int) -> None:
        """Removes a previously added change handler."""
        del self.change_handlers[i]

    def snapshot(self, endpoint: Endpoint) -> Optional[Dict[str, Any]]:
        """The last recorded status of an endpoint, or None if it has never been seen."""
        return self._snapshots.get(endpoint)

    async def update(self, endpoint: Endpoint, status: Mapping[str, Any]) -> List[StatusChange]:
        """Records a newly decoded status and notifies handlers of any differences.

        The first status seen for an endpoint only establishes the baseline; no notification is sent.
        Returns the list of changes (empty if nothing changed).
        """
        new_snapshot = copy.deepcopy(dict(status))
        old_snapshot = self._snapshots.get(endpoint)
        self._snapshots[endpoint] = new_snapshot
        if old_snapshot is None:
            logger.debug(f"Recorded initial status snapshot for {endpoint}")
            return []
        changes = diff_status(old_snapshot, new_snapshot, keys=self.watched_keys, endpoint=endpoint)
        if len(changes) > 0:
            logger.debug(f"Status of {endpoint} changed: {changes}")
            for handler in list(self.change_handlers.values()):
                await handler(endpoint, changes, new_snapshot)
        return changes

    def forget(self, endpoint: Endpoint) -> None:
        """Drops the snapshot for an endpoint. The next update re-establishes a silent baseline."""
        self._snapshots.pop(endpoint, None)
