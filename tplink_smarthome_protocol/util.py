#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Simple utility functions used by this package
"""

from __future__ import annotations

import os
import re
import socket
import hashlib
from ipaddress import IPv4Address

import netifaces

from .internal_types import *
from .constants import BROADCAST_ADDRESS

_MAC_SEPARATORS_RE = re.compile(r'[^0-9A-Fa-f]')

def full_name_of_type(t: type) -> str:
    """Returns the fully qualified name of a type, e.g. "tplink_smarthome_protocol.config.ClientConfig"."""
    module = t.__module__
    if module == 'builtins':
        return t.__qualname__
    return f"{module}.{t.__qualname__}"

def full_type(o: Any) -> str:
    """Returns the fully qualified name of an object's type."""
    return full_name_of_type(type(o))

def hash_pathname(pathname: str) -> str:
    """Returns a stable hex digest identifying an absolute pathname."""
    return hashlib.sha1(os.path.abspath(os.path.expanduser(pathname)).encode("utf-8")).hexdigest()

def normalize_mac(mac: str) -> str:
    """Normalizes a MAC address to 12 uppercase hex digits with no separators, e.g. "50C7BF0123AB"."""
    return _MAC_SEPARATORS_RE.sub('', mac).upper()

def get_default_ip_gateway(address_family: Union[socket.AddressFamily, int]=socket.AF_INET) -> Tuple[Optional[str], Optional[str]]:
    """Returns the (gateway_ip_address: str, gateway_interface_name: str) for the default IP gateway in the
       requested family, if any.
       returns (None, None) if there is no default gateway in the requested family."""
    assert int(address_family) in (int(socket.AF_INET), int(socket.AF_INET6))
    netiface_family = netifaces.AF_INET if int(address_family) == int(socket.AF_INET) else netifaces.AF_INET6
    gws = netifaces.gateways()
    if "default" in gws:
        default_gateway_infos = gws["default"]
        if netiface_family in default_gateway_infos:
            gw_ip, gw_interface_name = default_gateway_infos[netiface_family][:2]
            return (gw_ip, gw_interface_name)
    return (None, None)

def get_ipv4_interface_addresses(include_loopback: bool=False) -> List[Tuple[str, Optional[str], str]]:
    """Returns a list of Tuple[ip_address: str, broadcast_address: Optional[str], interface_name: str] for the
       IPv4 addresses of the local host. The result is sorted in a way that attempts to place the "preferred"
       address first in the list, according to the following scheme:
           1. Addresses on the default gateway interface precede all other addresses.
           2. Non-loopback addresses precede loopback addresses.
           3. Addresses that begin with 172. follow other addresses. This is a hack to
              deprioritize local docker network addresses.
    """
    result_with_priority: List[Tuple[int, str, Optional[str], str]] = []
    _, default_gateway_ifname = get_default_ip_gateway(socket.AF_INET)
    for ifname in netifaces.interfaces():
        ifinfo = netifaces.ifaddresses(ifname)
        for addrinfo in ifinfo.get(netifaces.AF_INET, []):
            ip_str = addrinfo.get('addr')
            if not isinstance(ip_str, str):
                continue
            broadcast = addrinfo.get('broadcast')
            if ifname == default_gateway_ifname:
                priority = 0
            elif IPv4Address(ip_str).is_loopback:
                if not include_loopback:
                    continue
                priority = 3
            elif ip_str.startswith('172.'):
                priority = 2
            else:
                priority = 1
            result_with_priority.append((priority, ip_str, broadcast, ifname))
    return [ (ip, broadcast, ifname) for _, ip, broadcast, ifname in sorted(result_with_priority, key=lambda x: (x[0], x[1], x[3])) ]

def get_broadcast_addresses() -> List[str]:
    """Returns the subnet broadcast addresses of the local non-loopback IPv4 interfaces, preferred interface first.

       Falls back to the limited broadcast address 255.255.255.255 if no interface reports one."""
    result: List[str] = []
    for _, broadcast, _ in get_ipv4_interface_addresses(include_loopback=False):
        if isinstance(broadcast, str) and not broadcast in result:
            result.append(broadcast)
    if len(result) == 0:
        result.append(BROADCAST_ADDRESS)
    return result
