"""Ingress traffic redirection for the service-connect plugin.

Non-local TCP traffic arriving at an intercept port is redirected to the
matching listener port through a dedicated chain in the ``nat`` table.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from vpccni.egress import IPTables
from vpccni.serviceconnect_config import NetConfig

logger = logging.getLogger(__name__)

INGRESS_CHAIN = "ECS_SERVICE_CONNECT_INGRESS"


def setup_ingress_rules(iptable: IPTables, config: NetConfig) -> None:
    """Install the ingress port redirection rules, if any are configured."""
    port_map = config.ingress_listener_to_intercept_port_map
    if not port_map:
        return
    _redirect_non_local_traffic(iptable, INGRESS_CHAIN, port_map)


def delete_ingress_rules(iptable: IPTables, config: NetConfig) -> None:
    """Remove the ingress port redirection rules, if any are configured."""
    if not config.ingress_listener_to_intercept_port_map:
        return
    try:
        _delete_non_local_redirection(iptable, INGRESS_CHAIN)
    except Exception as exc:
        logger.error("Delete the rule in PREROUTING chain failed: %s", exc)
        raise
    _remove_chain(iptable, "nat", INGRESS_CHAIN)


def _non_local_jump(chain: str) -> tuple[str, ...]:
    return ("-p", "tcp", "-m", "addrtype", "!", "--src-type", "LOCAL", "-j", chain)


def _redirect_non_local_traffic(
    iptable: IPTables, chain: str, listener_to_intercept: Mapping[int, int]
) -> None:
    try:
        iptable.new_chain("nat", chain)
    except Exception as exc:
        logger.error("Create new IP table chain[%s] failed: %s", chain, exc)
        raise

    for listener_port, intercept_port in listener_to_intercept.items():
        try:
            iptable.append(
                "nat", chain, "-p", "tcp", "--dport", str(intercept_port),
                "-j", "REDIRECT", "--to-port", str(listener_port),
            )
        except Exception as exc:
            logger.error(
                "Append rule to redirect traffic to Port in chain[%s] failed: %s", chain, exc
            )
            raise

    try:
        iptable.append("nat", "PREROUTING", *_non_local_jump(chain))
    except Exception as exc:
        logger.error("Append rule to jump from PREROUTING to chain[%s] failed: %s", chain, exc)
        raise


def _delete_non_local_redirection(iptable: IPTables, chain: str) -> None:
    try:
        iptable.delete("nat", "PREROUTING", *_non_local_jump(chain))
    except Exception as exc:
        logger.error(
            "Delete rule to redirect Non local traffic to chain[%s] failed: %s", chain, exc
        )
        raise


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