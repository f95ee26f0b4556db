#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Classification of decoded device status payloads into device variant tags.

Classification is a pure, ordered rule evaluation: rules are tested in order and the first
match wins, so rules for the most specific device shapes (fields unique to one family) must
come before generic ones. A status that matches nothing is tagged "unknown".
"""

from __future__ import annotations

from .internal_types import *
from .constants import UNKNOWN_VARIANT
from .exceptions import UnsupportedDeviceError

SYSTEM_MODULES: Tuple[str, ...] = ('system', 'smartlife.iot.common.system')
"""Module names under which devices report get_sysinfo"""

StatusPredicate = Callable[[Mapping[str, Any]], bool]
"""A predicate over a device's sysinfo mapping"""

class ClassifierRule:
    """A single (predicate -> variant tag) rule."""

    name: str
    variant_tag: str
    predicate: StatusPredicate

    def __init__(self, name: str, variant_tag: str, predicate: StatusPredicate) -> None:
        self.name = name
        self.variant_tag = variant_tag
        self.predicate = predicate

    def matches(self, sys_info: Mapping[str, Any]) -> bool:
        return bool(self.predicate(sys_info))

    def __str__(self) -> str:
        return f"ClassifierRule({self.name} -> {self.variant_tag})"

    def __repr__(self) -> str:
        return str(self)

def extract_sys_info(status: Mapping[str, Any]) -> Mapping[str, Any]:
    """Returns the sysinfo mapping from either a full get_sysinfo response
       (e.g., {"system": {"get_sysinfo": {...}}}) or a bare sysinfo mapping.

       Returns an empty mapping if a system module is present but holds no usable sysinfo."""
    for module in SYSTEM_MODULES:
        module_data = status.get(module)
        if isinstance(module_data, Mapping):
            sys_info = module_data.get('get_sysinfo')
            if isinstance(sys_info, Mapping):
                return sys_info
            return {}
    return status

def device_type_string(sys_info: Mapping[str, Any]) -> str:
    """The lowercased self-reported device type ("type", or "mic_type" on newer firmware)."""
    value = sys_info.get('type')
    if not isinstance(value, str) or value == '':
        value = sys_info.get('mic_type')
    return value.lower() if isinstance(value, str) else ''

def _is_camera(sys_info: Mapping[str, Any]) -> bool:
    mic_type = sys_info.get('mic_type')
    return isinstance(mic_type, str) and mic_type.upper() == 'IOT.IPCAMERA'

def _is_bulb(sys_info: Mapping[str, Any]) -> bool:
    return 'light_state' in sys_info or 'bulb' in device_type_string(sys_info)

def _is_plug(sys_info: Mapping[str, Any]) -> bool:
    dev_type = device_type_string(sys_info)
    return 'plug' in dev_type or 'switch' in dev_type or 'relay_state' in sys_info

DEFAULT_RULES: List[ClassifierRule] = [
    ClassifierRule("camera mic_type", "camera", _is_camera),
    ClassifierRule("bulb light_state or type", "bulb", _is_bulb),
    ClassifierRule("plug relay_state or type", "plug", _is_plug),
]
"""Rules applied by default, most specific first"""

KNOWN_VARIANTS: Tuple[str, ...] = tuple(rule.variant_tag for rule in DEFAULT_RULES)

def classify(status: Mapping[str, Any], rules: Optional[Sequence[ClassifierRule]]=None) -> str:
    """Returns the variant tag of the first rule matching a status payload, or "unknown".

    `status` may be a full response or a bare sysinfo mapping.
    """
    if rules is None:
        rules = DEFAULT_RULES
    sys_info = extract_sys_info(status)
    for rule in rules:
        if rule.matches(sys_info):
            return rule.variant_tag
    return UNKNOWN_VARIANT

def require_known_variant(status: Mapping[str, Any], rules: Optional[Sequence[ClassifierRule]]=None) -> str:
    """Like classify(), but raises UnsupportedDeviceError instead of returning "unknown"."""
    variant_tag = classify(status, rules)
    if variant_tag == UNKNOWN_VARIANT:
        sys_info = extract_sys_info(status)
        raise UnsupportedDeviceError(
            f"Unsupported device type: {device_type_string(sys_info) or '<missing type>'}",
            status=status
          )
    return variant_tag
