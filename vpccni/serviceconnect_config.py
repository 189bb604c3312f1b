"""Network configuration for the service-connect traffic redirection plugin."""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

MIN_PORT = 1
MAX_PORT = 65535


class ConfigError(ValueError):
    """Raised when a network configuration is malformed or invalid."""


class RedirectMode(str, Enum):
    """How egress traffic is redirected to the proxy."""

    NAT = "nat"
    TPROXY = "tproxy"


class IPProtocol(Enum):
    """IP protocol family whose netfilter tables are managed."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"


@dataclass
class NetConfig:
    """Validated, in-memory network configuration."""

    cni_version: str = ""
    name: str = ""
    type: str = ""
    ingress_listener_to_intercept_port_map: dict[int, int] = field(default_factory=dict)
    egress_port: int = 0
    egress_redirect_mode: RedirectMode | None = None
    egress_redirect_ipv4_addr: str = ""
    egress_redirect_ipv6_addr: str = ""
    egress_ipv4_cidr: str = ""
    egress_ipv6_cidr: str = ""
    ip_protocols: list[IPProtocol] = field(default_factory=list)


@dataclass
class _IngressEntry:
    listener_port: int
    intercept_port: int


@dataclass
class _RedirectIP:
    ipv4: str
    ipv6: str


@dataclass
class _VIP:
    ipv4_cidr: str
    ipv6_cidr: str


@dataclass
class _Egress:
    listener_port: int
    redirect_ip: _RedirectIP | None
    redirect_mode: str
    vip: _VIP | None


@dataclass
class _RawConfig:
    cni_version: str
    name: str
    type: str
    ingress: list[_IngressEntry]
    egress: _Egress | None
    enable_ipv4: bool
    enable_ipv6: bool


def validate_port_range(port: int) -> None:
    """Raise ConfigError unless port is a usable TCP port number."""
    if not MIN_PORT <= port <= MAX_PORT:
        raise ConfigError(f"invalid port {port} specified")


def parse_net_config(data: bytes | str) -> NetConfig:
    """Parse and validate a JSON network configuration."""
    try:
        raw = _decode(json.loads(data))
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"failed to parse network config: {exc}") from exc

    if not raw.ingress and raw.egress is None:
        raise ConfigError("either IngressConfig or EgressConfig must be present")
    if not raw.enable_ipv4 and not raw.enable_ipv6:
        raise ConfigError("both V4 and V6 cannot be disabled")

    protocols = []
    if raw.enable_ipv4:
        protocols.append(IPProtocol.IPV4)
    if raw.enable_ipv6:
        protocols.append(IPProtocol.IPV6)

    config = NetConfig(
        cni_version=raw.cni_version,
        name=raw.name,
        type=raw.type,
        ip_protocols=protocols,
    )
    config.ingress_listener_to_intercept_port_map = _parse_ingress(raw.ingress)
    _parse_egress(raw, config)
    return config


def _parse_ingress(entries: list[_IngressEntry]) -> dict[int, int]:
    port_map: dict[int, int] = {}
    for entry in entries:
        validate_port_range(entry.listener_port)
        if entry.intercept_port != 0:
            validate_port_range(entry.intercept_port)
            port_map[entry.listener_port] = entry.intercept_port
    return port_map


def _validate_redirect_mode(mode: str, egress: _Egress) -> RedirectMode:
    if mode == RedirectMode.NAT.value:
        if egress.listener_port == 0:
            raise ConfigError("missing required parameter: Egress ListenerPort")
        return RedirectMode.NAT
    if mode == RedirectMode.TPROXY.value:
        return RedirectMode.TPROXY
    raise ConfigError("invalid parameter: Egress RedirectMode")


def _parse_egress(raw: _RawConfig, config: NetConfig) -> None:
    egress = raw.egress
    if egress is None:
        return

    if (egress.listener_port == 0) == (egress.redirect_ip is None):
        raise ConfigError(
            "exactly one of ListenerPort and RedirectIP must be specified in Egress"
        )
    mode = _validate_redirect_mode(egress.redirect_mode, egress)

    if egress.listener_port != 0:
        validate_port_range(egress.listener_port)

    redirect_ip = egress.redirect_ip
    if redirect_ip is not None:
        if (raw.enable_ipv4 and not redirect_ip.ipv4) or (
            raw.enable_ipv6 and not redirect_ip.ipv6
        ):
            raise ConfigError("missing required parameter: EgressConfig Redirect IP")
        if redirect_ip.ipv4:
            if _parse_ip(redirect_ip.ipv4) is None:
                raise ConfigError("invalid parameter: EgressConfig RedirectIP")
            config.egress_redirect_ipv4_addr = redirect_ip.ipv4
        if redirect_ip.ipv6:
            if _parse_ip(redirect_ip.ipv6) is None:
                raise ConfigError("invalid parameter: EgressConfig RedirectIP")
            config.egress_redirect_ipv6_addr = redirect_ip.ipv6

    vip = egress.vip
    if vip is None:
        raise ConfigError("missing required parameter: EgressConfig VIP")
    if not vip.ipv4_cidr and not vip.ipv6_cidr:
        raise ConfigError("missing required parameter: EgressConfig VIP CIDR")
    if (raw.enable_ipv4 and not vip.ipv4_cidr) or (raw.enable_ipv6 and not vip.ipv6_cidr):
        raise ConfigError("missing required parameter: EgressConfig VIP CIDR")

    if vip.ipv4_cidr:
        address = _parse_cidr_address(vip.ipv4_cidr)
        if address is None or not _is_ipv4(address):
            raise ConfigError("invalid parameter: EgressConfig IPv4 CIDR Address")
    if vip.ipv6_cidr:
        if _parse_cidr_address(vip.ipv6_cidr) is None:
            raise ConfigError("invalid parameter: EgressConfig IPv6 CIDR Address")

    config.egress_redirect_mode = mode
    config.egress_port = egress.listener_port
    config.egress_ipv4_cidr = vip.ipv4_cidr
    config.egress_ipv6_cidr = vip.ipv6_cidr


def _parse_ip(text: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _parse_cidr_address(text: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Return the address part of a CIDR string, or None if it is not valid CIDR."""
    address_text, slash, prefix_text = text.partition("/")
    if not slash or not prefix_text or not (prefix_text.isascii() and prefix_text.isdigit()):
        return None
    address = _parse_ip(address_text)
    if address is None:
        return None
    prefix = int(prefix_text)
    bits = 32 if address.version == 4 else 128
    if prefix > bits:
        return None
    return address


def _is_ipv4(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if address.version == 4:
        return True
    return address.ipv4_mapped is not None


def _expect(value: Any, kind: type, key: str) -> Any:
    if kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, kind)
    if not ok:
        raise ValueError(f"field {key!r} has invalid type {type(value).__name__}")
    return value


def _get(obj: dict, key: str, kind: type, default: Any) -> Any:
    value = obj.get(key)
    if value is None:
        return default
    return _expect(value, kind, key)


def _get_object(obj: dict, key: str) -> dict | None:
    return _get(obj, key, dict, None)


def _decode(document: Any) -> _RawConfig:
    obj = _expect(document, dict, "network config")

    ingress = [
        _IngressEntry(
            listener_port=_get(entry, "listenerPort", int, 0),
            intercept_port=_get(entry, "interceptPort", int, 0),
        )
        for entry in (
            _expect(item, dict, "ingressConfig")
            for item in _get(obj, "ingressConfig", list, [])
        )
    ]

    egress = None
    egress_obj = _get_object(obj, "egressConfig")
    if egress_obj is not None:
        redirect_obj = _get_object(egress_obj, "redirectIP")
        vip_obj = _get_object(egress_obj, "vip")
        egress = _Egress(
            listener_port=_get(egress_obj, "listenerPort", int, 0),
            redirect_ip=None
            if redirect_obj is None
            else _RedirectIP(
                ipv4=_get(redirect_obj, "ipv4", str, ""),
                ipv6=_get(redirect_obj, "ipv6", str, ""),
            ),
            redirect_mode=_get(egress_obj, "redirectMode", str, ""),
            vip=None
            if vip_obj is None
            else _VIP(
                ipv4_cidr=_get(vip_obj, "ipv4Cidr", str, ""),
                ipv6_cidr=_get(vip_obj, "ipv6Cidr", str, ""),
            ),
        )

    return _RawConfig(
        cni_version=_get(obj, "cniVersion", str, ""),
        name=_get(obj, "name", str, ""),
        type=_get(obj, "type", str, ""),
        ingress=ingress,
        egress=egress,
        enable_ipv4=_get(obj, "enableIPv4", bool, False),
        enable_ipv6=_get(obj, "enableIPv6", bool, False),
    )