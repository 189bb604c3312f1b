"""Egress traffic redirection for the service-connect plugin.

Egress traffic bound for the service VIP CIDR is sent to the proxy in one of
three ways:

* NAT: a ``REDIRECT`` rule in the ``nat`` table.
* TPROXY to a port: mangle rules, a policy rule and a local route.
* TPROXY to an IP: a plain route through the redirect address.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Protocol, Union

from vpccni.serviceconnect_config import IPProtocol, NetConfig, RedirectMode

logger = logging.getLogger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

EGRESS_TPROXY_CHAIN = "ECS_SERVICE_CONNECT_DIVERT"
TPROXY_ROUTE_TABLE = 100
TPROXY_ROUTE_MARKER = 1
TPROXY_MARK = "0x1/0x1"

LOOPBACK_INTERFACE = "lo"

# Kernel routing constants.
RT_SCOPE_UNIVERSE = 0
RT_SCOPE_HOST = 254
RTN_UNSPEC = 0
RTN_LOCAL = 2


@dataclass(frozen=True)
class Route:
    """A routing table entry."""

    dst: IPNetwork | None = None
    gateway: IPAddress | None = None
    scope: int = RT_SCOPE_UNIVERSE
    kind: int = RTN_UNSPEC
    table: int = 0
    link_index: int = 0

    @property
    def family(self) -> int:
        """Address family of the route, judged by destination then gateway."""
        for value in (self.dst, self.gateway):
            if value is not None:
                return socket.AF_INET6 if value.version == 6 else socket.AF_INET
        return socket.AF_INET


@dataclass(frozen=True)
class Rule:
    """A policy routing rule: packets with ``mark`` look up ``table``."""

    family: int
    mark: int
    table: int


class IPTables(Protocol):
    """The netfilter operations the plugin needs for one protocol family."""

    def new_chain(self, table: str, chain: str) -> None: ...

    def append(self, table: str, chain: str, *rulespec: str) -> None: ...

    def delete(self, table: str, chain: str, *rulespec: str) -> None: ...

    def clear_chain(self, table: str, chain: str) -> None: ...

    def delete_chain(self, table: str, chain: str) -> None: ...


class Routing(Protocol):
    """The routing operations the plugin needs; failures raise OSError."""

    def add_route(self, route: Route) -> None: ...

    def delete_route(self, route: Route) -> None: ...

    def list_routes(self, family: int) -> list[Route]: ...

    def add_rule(self, rule: Rule) -> None: ...

    def delete_rule(self, rule: Rule) -> None: ...

    def list_rules(self, family: int) -> list[Rule]: ...

    def link_index(self, name: str) -> int: ...


def cidr_for(proto: IPProtocol, config: NetConfig) -> str:
    """Return the egress VIP CIDR for the given protocol."""
    if proto is IPProtocol.IPV4:
        return config.egress_ipv4_cidr
    return config.egress_ipv6_cidr


def default_cidr(proto: IPProtocol) -> str:
    """Return the CIDR that matches all traffic of the given protocol."""
    unspecified = "::" if proto is IPProtocol.IPV6 else "0.0.0.0"
    return str(ipaddress.ip_network((unspecified, 0)))


def setup_egress_rules(
    iptable: IPTables, routing: Routing, proto: IPProtocol, config: NetConfig
) -> None:
    """Install the egress redirection for one protocol family."""
    mode = config.egress_redirect_mode
    if mode is RedirectMode.NAT:
        if config.egress_port:
            _redirect_by_nat(iptable, cidr_for(proto, config), str(config.egress_port))
    elif mode is RedirectMode.TPROXY:
        if config.egress_redirect_ipv4_addr or config.egress_redirect_ipv6_addr:
            _setup_redirection_ip(routing, proto, config)
        elif config.egress_port:
            _redirect_by_tproxy(
                iptable, routing, proto, cidr_for(proto, config), str(config.egress_port)
            )


def delete_egress_rules(
    iptable: IPTables, routing: Routing, proto: IPProtocol, config: NetConfig
) -> None:
    """Remove the egress redirection for one protocol family."""
    mode = config.egress_redirect_mode
    if mode is RedirectMode.NAT:
        if config.egress_port:
            _delete_nat_rule(iptable, cidr_for(proto, config), str(config.egress_port))
    elif mode is RedirectMode.TPROXY:
        if config.egress_redirect_ipv4_addr or config.egress_redirect_ipv6_addr:
            _delete_redirection_ip(routing, proto, config)
        elif config.egress_port:
            _delete_tproxy_rules(
                iptable, routing, proto, cidr_for(proto, config), str(config.egress_port)
            )


def _family(proto: IPProtocol) -> int:
    return socket.AF_INET6 if proto is IPProtocol.IPV6 else socket.AF_INET


def _network(text: str) -> IPNetwork | None:
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError:
        return None


def _address(text: str) -> IPAddress | None:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _redirection_route(proto: IPProtocol, config: NetConfig) -> Route:
    if proto is IPProtocol.IPV6:
        cidr, gateway = config.egress_ipv6_cidr, config.egress_redirect_ipv6_addr
    else:
        cidr, gateway = config.egress_ipv4_cidr, config.egress_redirect_ipv4_addr
    return Route(dst=_network(cidr), gateway=_address(gateway))


def _nat_rulespec(cidr: str, port: str) -> tuple[str, ...]:
    return ("-p", "tcp", "-d", cidr, "-j", "REDIRECT", "--to-port", port)


def _socket_rulespec() -> tuple[str, ...]:
    return ("-p", "tcp", "-m", "socket", "-j", EGRESS_TPROXY_CHAIN)


def _tproxy_rulespec(cidr: str, port: str) -> tuple[str, ...]:
    return (
        "-p", "tcp", "-m", "tcp", "-d", cidr,
        "-j", "TPROXY", "--tproxy-mark", TPROXY_MARK, "--on-port", port,
    )


def _redirect_by_nat(iptable: IPTables, cidr: str, port: str) -> None:
    try:
        iptable.append("nat", "OUTPUT", *_nat_rulespec(cidr, port))
    except Exception as exc:
        logger.error("Append rule to redirect traffic of CIDR failed: %s", exc)
        raise


def _delete_nat_rule(iptable: IPTables, cidr: str, port: str) -> None:
    try:
        iptable.delete("nat", "OUTPUT", *_nat_rulespec(cidr, port))
    except Exception as exc:
        logger.error("Delete rule to redirect traffic of CIDR failed: %s", exc)
        raise


def _setup_redirection_ip(routing: Routing, proto: IPProtocol, config: NetConfig) -> None:
    route = _redirection_route(proto, config)
    try:
        routing.add_route(route)
    except OSError as exc:
        logger.error("Adding IP route %s failed: %s", route, exc)
        raise


def _delete_redirection_ip(routing: Routing, proto: IPProtocol, config: NetConfig) -> None:
    wanted = _redirection_route(proto, config)
    try:
        routes = routing.list_routes(_family(proto))
    except OSError:
        routes = []
    for route in routes:
        if route.dst == wanted.dst and route.gateway == wanted.gateway:
            try:
                routing.delete_route(route)
            except OSError as exc:
                logger.error("Deleting IP route %s failed: %s", route, exc)
                raise


def _redirect_by_tproxy(
    iptable: IPTables, routing: Routing, proto: IPProtocol, vip_cidr: str, port: str
) -> None:
    steps = (
        (lambda: iptable.new_chain("mangle", EGRESS_TPROXY_CHAIN),
         "Creating new IP table chain[%s] failed: %s"),
        (lambda: iptable.append(
            "mangle", EGRESS_TPROXY_CHAIN, "-j", "MARK", "--set-mark", str(TPROXY_ROUTE_MARKER)),
         "Adding TProxy Marker to the chain[%s] failed: %s"),
        (lambda: iptable.append("mangle", EGRESS_TPROXY_CHAIN, "-j", "ACCEPT"),
         "Accepting packets to the chain[%s] failed: %s"),
        (lambda: iptable.append("mangle", "PREROUTING", *_socket_rulespec()),
         "Routing packets through the chain[%s] failed: %s"),
    )
    for step, message in steps:
        try:
            step()
        except Exception as exc:
            logger.error(message, EGRESS_TPROXY_CHAIN, exc)
            raise

    _add_tproxy_rule(routing, proto)
    _add_default_tproxy_route(routing, proto)

    try:
        iptable.append("mangle", "PREROUTING", *_tproxy_rulespec(vip_cidr, port))
    except Exception as exc:
        logger.error("Redirecting traffic to the egress port failed: %s", exc)
        raise


def _tproxy_rule(proto: IPProtocol) -> Rule:
    return Rule(family=_family(proto), mark=TPROXY_ROUTE_MARKER, table=TPROXY_ROUTE_TABLE)


def _add_tproxy_rule(routing: Routing, proto: IPProtocol) -> None:
    rule = _tproxy_rule(proto)
    try:
        routing.add_rule(rule)
    except OSError as exc:
        logger.error("Add IP rule %s failed: %s", rule, exc)
        raise


def _loopback_index(routing: Routing) -> int:
    try:
        return routing.link_index(LOOPBACK_INTERFACE)
    except OSError as exc:
        logger.error("Unable to get loopback interface: %s", exc)
        raise


def _add_default_tproxy_route(routing: Routing, proto: IPProtocol) -> None:
    route = Route(
        dst=_network(default_cidr(proto)),
        scope=RT_SCOPE_HOST,
        kind=RTN_LOCAL,
        table=TPROXY_ROUTE_TABLE,
        link_index=_loopback_index(routing),
    )
    try:
        routing.add_route(route)
    except OSError as exc:
        logger.error("Adding default IP route %s failed: %s", route, exc)
        raise
    logger.info("Added route: %s", route)


def _remove_chain(iptable: IPTables, table: str, chain: str) -> None:
    try:
        iptable.clear_chain(table, chain)
    except Exception as exc:
        logger.error("Failed to flush rules in chain[%s]: %s", chain, exc)
        raise
    try:
        iptable.delete_chain(table, chain)
    except Exception as exc:
        logger.error("Failed to delete chain[%s]: %s", chain, exc)
        raise


def _delete_tproxy_rules(
    iptable: IPTables, routing: Routing, proto: IPProtocol, vip_cidr: str, port: str
) -> None:
    try:
        iptable.delete("mangle", "PREROUTING", *_socket_rulespec())
    except Exception:
        logger.error("Failed to remove chain: %s from mangle table", EGRESS_TPROXY_CHAIN)
        raise
    _remove_chain(iptable, "mangle", EGRESS_TPROXY_CHAIN)

    _delete_tproxy_rule(routing, proto)
    _delete_default_tproxy_route(routing, proto)

    try:
        iptable.delete("mangle", "PREROUTING", *_tproxy_rulespec(vip_cidr, port))
    except Exception as exc:
        logger.error("Failed to remove traffic redirection rule to the egress port: %s", exc)
        raise


def _delete_tproxy_rule(routing: Routing, proto: IPProtocol) -> None:
    """Delete the first matching policy rule; failures are logged only."""
    try:
        rules = routing.list_rules(_family(proto))
    except OSError:
        rules = []
    for rule in rules:
        if rule.table == TPROXY_ROUTE_TABLE and rule.mark == TPROXY_ROUTE_MARKER:
            try:
                routing.delete_rule(rule)
            except OSError as exc:
                logger.error("Delete IP rule %s failed: %s", rule, exc)
            break


def _delete_default_tproxy_route(routing: Routing, proto: IPProtocol) -> None:
    """Delete local routes on loopback in the TPROXY table; failures are logged only."""
    index = _loopback_index(routing)
    try:
        routes = routing.list_routes(_family(proto))
    except OSError:
        routes = []
    for route in routes:
        if route.table == TPROXY_ROUTE_TABLE and route.link_index == index:
            try:
                routing.delete_route(route)
            except OSError as exc:
                logger.error("Deleting default IP route %s failed: %s", route, exc)