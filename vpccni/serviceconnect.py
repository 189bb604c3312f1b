"""The service-connect plugin: ADD and DEL commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from vpccni.egress import IPTables, Routing, delete_egress_rules, setup_egress_rules
from vpccni.ingress import delete_ingress_rules, setup_ingress_rules
from vpccni.serviceconnect_config import (
    ConfigError,
    IPProtocol,
    NetConfig,
    parse_net_config,
)

logger = logging.getLogger(__name__)

PLUGIN_NAME = "ecs-serviceconnect"
LOG_FILE_PATH = "/log/ecs-serviceconnect.log"
SPEC_VERSIONS = ("0.3.0", "0.3.1", "0.4.0", "1.0.0")

T = TypeVar("T")

IPTablesFactory = Callable[[IPProtocol], IPTables]
# Runs a callable inside the named network namespace and returns its value.
# Raises OSError when the namespace cannot be found.
NamespaceRunner = Callable[[str, Callable[[], Any]], Any]


@dataclass
class CmdArgs:
    """Arguments of one CNI command invocation."""

    container_id: str = ""
    netns: str = ""
    if_name: str = ""
    args: str = ""
    path: str = ""
    stdin_data: bytes | str = b""


class ServiceConnectPlugin:
    """Sets up and tears down service-connect traffic redirection in a namespace."""

    name = PLUGIN_NAME
    spec_versions = SPEC_VERSIONS

    def __init__(
        self,
        iptables_factory: IPTablesFactory,
        routing: Routing,
        namespace_runner: NamespaceRunner,
    ) -> None:
        self._iptables_factory = iptables_factory
        self._routing = routing
        self._namespace_runner = namespace_runner

    def add(self, args: CmdArgs) -> dict[str, Any]:
        """Install the redirection rules and return the CNI result."""
        config = self._parse(args)
        logger.info("Executing ADD with netconfig: %s.", config)
        logger.debug("Searching for netns %s.", args.netns)

        def setup() -> Exception | None:
            for proto in config.ip_protocols:
                try:
                    self._setup_netfilter_rules(proto, config)
                except Exception as exc:
                    logger.error("Failed to set up iptables rules: %s.", exc)
                    return exc
            return None

        self._run(args.netns, setup)
        return _result(args, config)

    def delete(self, args: CmdArgs) -> None:
        """Remove the redirection rules installed by add."""
        config = self._parse(args)
        logger.info("Executing DEL with netconfig: %s.", config)

        def teardown() -> None:
            for proto in config.ip_protocols:
                try:
                    self._delete_netfilter_rules(proto, config)
                except Exception as exc:
                    logger.error("Failed to delete netfilter rules: %s.", exc)
                    raise

        self._run(args.netns, teardown)

    def _parse(self, args: CmdArgs) -> NetConfig:
        try:
            return parse_net_config(args.stdin_data)
        except ConfigError as exc:
            logger.error("Failed to parse netconfig from args: %s.", exc)
            raise

    def _run(self, netns: str, fn: Callable[[], T]) -> T:
        try:
            return self._namespace_runner(netns, fn)
        except OSError as exc:
            logger.error("Failed to find netns %s: %s.", netns, exc)
            raise

    def _setup_netfilter_rules(self, proto: IPProtocol, config: NetConfig) -> None:
        iptable = self._iptables_factory(proto)
        setup_ingress_rules(iptable, config)
        setup_egress_rules(iptable, self._routing, proto, config)

    def _delete_netfilter_rules(self, proto: IPProtocol, config: NetConfig) -> None:
        iptable = self._iptables_factory(proto)
        delete_ingress_rules(iptable, config)
        delete_egress_rules(iptable, self._routing, proto, config)


def _result(args: CmdArgs, config: NetConfig) -> dict[str, Any]:
    if config.cni_version not in SPEC_VERSIONS:
        raise ConfigError(f"unsupported CNI result version {config.cni_version!r}")
    return {
        "cniVersion": config.cni_version,
        "interfaces": [{"name": args.if_name, "sandbox": args.netns}],
        "dns": {},
    }