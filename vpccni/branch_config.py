"""Network configuration for the VPC branch ENI plugin."""

from __future__ import annotations

import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from vpccni.serviceconnect_config import ConfigError

logger = logging.getLogger(__name__)

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_TAP_QUEUES = 1

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_PER_CONTAINER_KEYS = (
    "BranchVlanID",
    "BranchMACAddress",
    "IPAddresses",
    "GatewayIPAddresses",
)


class InterfaceType(str, Enum):
    """Kind of container-facing link created for the branch ENI."""

    VLAN = "vlan"
    TAP = "tap"
    MACVTAP = "macvtap"


@dataclass
class TAPConfig:
    """Ownership and queue settings of a TAP interface."""

    uid: int = 0
    gid: int = 0
    queues: int = DEFAULT_TAP_QUEUES


@dataclass
class BranchNetConfig:
    """Validated, in-memory branch ENI network configuration."""

    cni_version: str = ""
    name: str = ""
    type: str = ""
    trunk_name: str = ""
    trunk_mac_address: str | None = None
    branch_vlan_id: int = 0
    branch_mac_address: str = ""
    ip_addresses: list[IPInterface] = field(default_factory=list)
    gateway_ip_addresses: list[IPAddress] = field(default_factory=list)
    block_imds: bool = False
    interface_type: str = InterfaceType.TAP
    tap: TAPConfig | None = None


def parse_cni_args(args: str) -> dict[str, str]:
    """Split a CNI_ARGS string of the form K1=V1;K2=V2 into a dict."""
    pairs: dict[str, str] = {}
    for pair in args.split(";"):
        parts = pair.split("=")
        if len(parts) != 2:
            raise ConfigError(f"ARGS: invalid pair {pair!r}")
        key, value = parts
        pairs[key] = value
    return pairs


def parse_ip_network(text: str) -> IPInterface:
    """Parse an address with prefix length, such as 10.0.0.5/16, keeping host bits."""
    address_text, slash, prefix_text = text.partition("/")
    if (
        not slash
        or "%" in address_text
        or not (prefix_text.isascii() and prefix_text.isdigit())
    ):
        raise ConfigError(f"invalid CIDR address {text}")
    try:
        address = ipaddress.ip_address(address_text)
    except ValueError as exc:
        raise ConfigError(f"invalid CIDR address {text}") from exc
    prefix = int(prefix_text)
    if prefix > address.max_prefixlen:
        raise ConfigError(f"invalid CIDR address {text}")
    return ipaddress.ip_interface((address, prefix))


def parse_branch_net_config(data: bytes | str, args: str = "") -> BranchNetConfig:
    """Parse network configuration JSON and per-container CNI_ARGS into a config."""
    try:
        raw = _decode(json.loads(data))
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"failed to parse network config: {exc}") from exc

    if args:
        try:
            overrides = _per_container_overrides(args)
        except ConfigError as exc:
            raise ConfigError(f"failed to parse per-container args: {exc}") from exc
        if overrides.get("BranchVlanID"):
            raw["branchVlanID"] = overrides["BranchVlanID"]
        if overrides.get("BranchMACAddress"):
            raw["branchMACAddress"] = overrides["BranchMACAddress"]
        if overrides.get("IPAddresses"):
            raw["ipAddresses"] = overrides["IPAddresses"].split(",")
        if overrides.get("GatewayIPAddresses"):
            raw["gatewayIPAddresses"] = overrides["GatewayIPAddresses"].split(",")

    interface_type = raw["interfaceType"] or InterfaceType.TAP.value
    is_tap = interface_type == InterfaceType.TAP.value

    if not raw["trunkName"] and not raw["trunkMACAddress"]:
        raise ConfigError("missing required parameter trunkName or trunkMACAddress")
    if not raw["branchVlanID"]:
        raise ConfigError("missing required parameter branchVlanID")
    if not raw["branchMACAddress"]:
        raise ConfigError("missing required parameter branchMACAddress")
    if is_tap:
        if not raw["uid"]:
            raise ConfigError("missing required parameter uid")
        if not raw["gid"]:
            raise ConfigError("missing required parameter gid")

    config = BranchNetConfig(
        cni_version=raw["cniVersion"],
        name=raw["name"],
        type=raw["type"],
        trunk_name=raw["trunkName"],
        block_imds=raw["blockInstanceMetadata"],
        interface_type=_interface_type(interface_type),
    )

    if raw["trunkMACAddress"]:
        try:
            config.trunk_mac_address = _parse_mac(raw["trunkMACAddress"])
        except ValueError:
            raise ConfigError(f"invalid trunkMACAddress {raw['trunkMACAddress']}") from None

    try:
        config.branch_vlan_id = _atoi(raw["branchVlanID"])
    except ValueError:
        raise ConfigError(f"invalid branchVlanID {raw['branchVlanID']}") from None

    try:
        config.branch_mac_address = _parse_mac(raw["branchMACAddress"])
    except ValueError:
        raise ConfigError(f"invalid branchMACAddress {raw['branchMACAddress']}") from None

    for text in raw["ipAddresses"]:
        try:
            config.ip_addresses.append(parse_ip_network(text))
        except ConfigError:
            raise ConfigError(f"invalid ipAddress {text}") from None

    for text in raw["gatewayIPAddresses"]:
        gateway = _parse_ip(text)
        if gateway is None:
            raise ConfigError(f"invalid gatewayIPAddress {text}")
        config.gateway_ip_addresses.append(gateway)

    if is_tap:
        tap = TAPConfig()
        try:
            tap.uid = _atoi(raw["uid"])
        except ValueError:
            raise ConfigError(f"invalid uid {raw['uid']}") from None
        try:
            tap.gid = _atoi(raw["gid"])
        except ValueError:
            raise ConfigError(f"invalid gid {raw['gid']}") from None
        config.tap = tap

    logger.debug("Created NetConfig: %s", config)
    return config


def _per_container_overrides(args: str) -> dict[str, str]:
    pairs = parse_cni_args(args)
    if "IgnoreUnknown" in pairs:
        value = pairs["IgnoreUnknown"].lower()
        if value not in ("1", "true", "0", "false"):
            raise ConfigError(f"boolean unmarshal error: invalid input {pairs['IgnoreUnknown']}")
    return {key: pairs[key] for key in _PER_CONTAINER_KEYS if key in pairs}


def _interface_type(text: str) -> str:
    try:
        return InterfaceType(text)
    except ValueError:
        return text


def _atoi(text: str) -> int:
    if not _INT_PATTERN.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range {text!r}")
    return value


def _parse_ip(text: str) -> IPAddress | None:
    if "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _parse_mac(text: str) -> str:
    """Parse a 48-bit, 64-bit or 20-octet hardware address into colon-separated hex."""
    if len(text) < 14:
        raise ValueError(f"invalid MAC address {text!r}")
    if text[2] in ":-":
        if (len(text) + 1) % 3:
            raise ValueError(f"invalid MAC address {text!r}")
        count = (len(text) + 1) // 3
        groups = text.split(text[2])
        width = 2
    elif text[4] == ".":
        if (len(text) + 1) % 5:
            raise ValueError(f"invalid MAC address {text!r}")
        count = 2 * (len(text) + 1) // 5
        groups = text.split(".")
        width = 4
    else:
        raise ValueError(f"invalid MAC address {text!r}")

    if count not in (6, 8, 20):
        raise ValueError(f"invalid MAC address {text!r}")
    if any(len(group) != width or not set(group) <= _HEX_DIGITS for group in groups):
        raise ValueError(f"invalid MAC address {text!r}")

    octets = bytes.fromhex("".join(groups))
    return ":".join(f"{octet:02x}" for octet in octets)


def _string(obj: dict, key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} has invalid type {type(value).__name__}")
    return value


def _string_list(obj: dict, key: str) -> list[str]:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field {key!r} has invalid type {type(value).__name__}")
    items = []
    for item in value:
        if item is None:
            items.append("")
        elif isinstance(item, str):
            items.append(item)
        else:
            raise ValueError(f"field {key!r} has invalid item type {type(item).__name__}")
    return items


def _decode(document: Any) -> dict[str, Any]:
    if not isinstance(document, dict):
        raise ValueError("network config must be a JSON object")
    block = document.get("blockInstanceMetadata")
    if block is None:
        block = False
    elif not isinstance(block, bool):
        raise ValueError(
            f"field 'blockInstanceMetadata' has invalid type {type(block).__name__}"
        )
    raw: dict[str, Any] = {
        key: _string(document, key)
        for key in (
            "cniVersion",
            "name",
            "type",
            "trunkName",
            "trunkMACAddress",
            "branchVlanID",
            "branchMACAddress",
            "interfaceType",
            "uid",
            "gid",
        )
    }
    raw["ipAddresses"] = _string_list(document, "ipAddresses")
    raw["gatewayIPAddresses"] = _string_list(document, "gatewayIPAddresses")
    raw["blockInstanceMetadata"] = block
    return raw