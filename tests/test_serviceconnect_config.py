import json

import pytest

from vpccni.serviceconnect_config import (
    ConfigError,
    IPProtocol,
    RedirectMode,
    parse_net_config,
    validate_port_range,
)

V4_VIP = "127.255.0.0/16"
V6_VIP = "2002::1234:abcd:ffff:c0a8:101/64"


def _doc(**fields):
    base = {"cniVersion": "1.0.0", "name": "test-network", "type": "ecs-serviceconnect"}
    base.update(fields)
    return json.dumps(base)


def _nat_egress(vip):
    return {"listenerPort": 30002, "redirectMode": "nat", "vip": vip}


VALID = {
    "valid_empty_ingress": (
        _doc(
            ingressConfig=[],
            egressConfig=_nat_egress({"ipv4Cidr": V4_VIP}),
            enableIPv4=True,
        ),
        {},
        30002,
        V4_VIP,
        "",
        [IPProtocol.IPV4],
    ),
    "valid_ingress_with_port_intercept_1": (
        _doc(
            ingressConfig=[
                {"listenerPort": 30000, "interceptPort": 8080},
                {"listenerPort": 30001, "interceptPort": 8090},
            ],
            egressConfig=_nat_egress({"ipv4Cidr": V4_VIP}),
            enableIPv4=True,
        ),
        {30000: 8080, 30001: 8090},
        30002,
        V4_VIP,
        "",
        [IPProtocol.IPV4],
    ),
    "valid_ingress_with_port_intercept_2": (
        _doc(
            ingressConfig=[{"listenerPort": 30000, "interceptPort": 8080}],
            egressConfig=_nat_egress({"ipv4Cidr": V4_VIP, "ipv6Cidr": V6_VIP}),
            enableIPv4=True,
            enableIPv6=True,
        ),
        {30000: 8080},
        30002,
        V4_VIP,
        V6_VIP,
        [IPProtocol.IPV4, IPProtocol.IPV6],
    ),
    "valid_ingress_without_port_intercept": (
        _doc(
            ingressConfig=[{"listenerPort": 30000}],
            egressConfig=_nat_egress({"ipv4Cidr": V4_VIP, "ipv6Cidr": V6_VIP}),
            enableIPv4=True,
            enableIPv6=True,
        ),
        {},
        30002,
        V4_VIP,
        V6_VIP,
        [IPProtocol.IPV4, IPProtocol.IPV6],
    ),
    "valid_without_egress": (
        _doc(ingressConfig=[{"listenerPort": 30000}], enableIPv4=True),
        {},
        0,
        "",
        "",
        [IPProtocol.IPV4],
    ),
    "valid_without_ingress": (
        _doc(egressConfig=_nat_egress({"ipv4Cidr": V4_VIP}), enableIPv4=True),
        {},
        30002,
        V4_VIP,
        "",
        [IPProtocol.IPV4],
    ),
}


@pytest.mark.parametrize("name", sorted(VALID))
def test_valid_configs(name):
    data, ingress, egress_port, v4, v6, protos = VALID[name]
    config = parse_net_config(data)
    assert config.ingress_listener_to_intercept_port_map == ingress
    assert config.egress_port == egress_port
    assert config.egress_ipv4_cidr == v4
    assert config.egress_ipv6_cidr == v6
    assert config.ip_protocols == protos


INVALID = {
    "invalid_egress_ipv4_cidr_1": (
        _doc(egressConfig=_nat_egress({"ipv4Cidr": "127.255.0.0"}), enableIPv4=True),
        "invalid parameter: EgressConfig IPv4 CIDR Address",
    ),
    "invalid_egress_ipv4_cidr_2": (
        _doc(egressConfig=_nat_egress({"ipv4Cidr": "2002::1/64"}), enableIPv4=True),
        "invalid parameter: EgressConfig IPv4 CIDR Address",
    ),
    "invalid_egress_ipv6_cidr_1": (
        _doc(egressConfig=_nat_egress({"ipv6Cidr": "2002::1234"}), enableIPv6=True),
        "invalid parameter: EgressConfig IPv6 CIDR Address",
    ),
    "invalid_egress_ipv6_cidr_2": (
        _doc(egressConfig=_nat_egress({"ipv6Cidr": "2002::zz/64"}), enableIPv6=True),
        "invalid parameter: EgressConfig IPv6 CIDR Address",
    ),
    "invalid_egress_listener_port": (
        _doc(
            egressConfig={"listenerPort": -1, "redirectMode": "nat", "vip": {"ipv4Cidr": V4_VIP}},
            enableIPv4=True,
        ),
        "invalid port -1 specified",
    ),
    "invalid_egress_redirect_ip_1": (
        _doc(
            egressConfig={
                "redirectIP": {"ipv4": "999.1.1.1"},
                "redirectMode": "tproxy",
                "vip": {"ipv4Cidr": V4_VIP},
            },
            enableIPv4=True,
        ),
        "invalid parameter: EgressConfig RedirectIP",
    ),
    "invalid_egress_redirect_ip_2": (
        _doc(
            egressConfig={
                "redirectIP": {"ipv4": "10.0.0.1"},
                "redirectMode": "tproxy",
                "vip": {"ipv4Cidr": V4_VIP, "ipv6Cidr": V6_VIP},
            },
            enableIPv4=True,
            enableIPv6=True,
        ),
        "missing required parameter: EgressConfig Redirect IP",
    ),
    "invalid_egress_redirect_ip_3": (
        _doc(
            egressConfig={
                "redirectIP": {"ipv4": "10.0.0.1"},
                "redirectMode": "nat",
                "vip": {"ipv4Cidr": V4_VIP},
            },
            enableIPv4=True,
        ),
        "missing required parameter: Egress ListenerPort",
    ),
    "invalid_empty_egress": (
        _doc(egressConfig={}, enableIPv4=True),
        "exactly one of ListenerPort and RedirectIP must be specified in Egress",
    ),
    "invalid_empty_egress_vip": (
        _doc(egressConfig=_nat_egress({}), enableIPv4=True),
        "missing required parameter: EgressConfig VIP CIDR",
    ),
    "invalid_ingress_intercept_port": (
        _doc(ingressConfig=[{"listenerPort": 30000, "interceptPort": -1}], enableIPv4=True),
        "invalid port -1 specified",
    ),
    "invalid_ingress_listener_port": (
        _doc(ingressConfig=[{"listenerPort": 80000, "interceptPort": 8080}], enableIPv4=True),
        "invalid port 80000 specified",
    ),
    "invalid_missing_egress_listener_port": (
        _doc(
            egressConfig={"redirectMode": "nat", "vip": {"ipv4Cidr": V4_VIP}},
            enableIPv4=True,
        ),
        "exactly one of ListenerPort and RedirectIP must be specified in Egress",
    ),
    "invalid_missing_egress_vip": (
        _doc(egressConfig={"listenerPort": 30002, "redirectMode": "nat"}, enableIPv4=True),
        "missing required parameter: EgressConfig VIP",
    ),
    "invalid_missing_ingress_egress": (
        _doc(enableIPv4=True),
        "either IngressConfig or EgressConfig must be present",
    ),
    "invalid_missing_ingress_listener_port": (
        _doc(ingressConfig=[{"interceptPort": 8080}], enableIPv4=True),
        "invalid port 0 specified",
    ),
    "invalid_missing_ip": (
        _doc(egressConfig=_nat_egress({"ipv4Cidr": V4_VIP})),
        "both V4 and V6 cannot be disabled",
    ),
    "invalid_missing_redirect_mode": (
        _doc(
            egressConfig={"listenerPort": 30002, "vip": {"ipv4Cidr": V4_VIP}},
            enableIPv4=True,
        ),
        "invalid parameter: Egress RedirectMode",
    ),
    "invalid_redirect_mode": (
        _doc(
            egressConfig={"listenerPort": 30002, "redirectMode": "bogus", "vip": {"ipv4Cidr": V4_VIP}},
            enableIPv4=True,
        ),
        "invalid parameter: Egress RedirectMode",
    ),
    "invalid_v6_missing_egress_vip": (
        _doc(
            egressConfig=_nat_egress({"ipv4Cidr": V4_VIP}),
            enableIPv4=True,
            enableIPv6=True,
        ),
        "missing required parameter: EgressConfig VIP CIDR",
    ),
}


@pytest.mark.parametrize("name", sorted(INVALID))
def test_invalid_configs(name):
    data, message = INVALID[name]
    with pytest.raises(ConfigError) as info:
        parse_net_config(data)
    assert str(info.value) == message


def test_tproxy_redirect_ip():
    data = _doc(
        egressConfig={
            "redirectIP": {"ipv4": "169.254.0.1", "ipv6": "fd00::1"},
            "redirectMode": "tproxy",
            "vip": {"ipv4Cidr": V4_VIP, "ipv6Cidr": V6_VIP},
        },
        enableIPv4=True,
        enableIPv6=True,
    )
    config = parse_net_config(data)
    assert config.egress_redirect_mode is RedirectMode.TPROXY
    assert config.egress_port == 0
    assert config.egress_redirect_ipv4_addr == "169.254.0.1"
    assert config.egress_redirect_ipv6_addr == "fd00::1"


def test_tproxy_redirect_port():
    data = _doc(
        egressConfig={"listenerPort": 30002, "redirectMode": "tproxy", "vip": {"ipv4Cidr": V4_VIP}},
        enableIPv4=True,
    )
    config = parse_net_config(data)
    assert config.egress_redirect_mode is RedirectMode.TPROXY
    assert config.egress_port == 30002
    assert config.egress_redirect_ipv4_addr == ""


def test_nat_mode_and_common_fields():
    config = parse_net_config(_doc(egressConfig=_nat_egress({"ipv4Cidr": V4_VIP}), enableIPv4=True))
    assert config.egress_redirect_mode is RedirectMode.NAT
    assert config.cni_version == "1.0.0"
    assert config.name == "test-network"
    assert config.type == "ecs-serviceconnect"


def test_no_egress_leaves_mode_unset():
    config = parse_net_config(_doc(ingressConfig=[{"listenerPort": 1}], enableIPv6=True))
    assert config.egress_redirect_mode is None
    assert config.ip_protocols == [IPProtocol.IPV6]


def test_accepts_bytes():
    data = _doc(ingressConfig=[{"listenerPort": 30000, "interceptPort": 8080}], enableIPv4=True)
    config = parse_net_config(data.encode())
    assert config.ingress_listener_to_intercept_port_map == {30000: 8080}


@pytest.mark.parametrize(
    "data",
    [
        "{not json",
        '{"enableIPv4": "yes", "ingressConfig": [{"listenerPort": 1}]}',
        '{"enableIPv4": true, "ingressConfig": [{"listenerPort": "80"}]}',
        '{"enableIPv4": true, "ingressConfig": [{"listenerPort": 1.5}]}',
        '{"enableIPv4": true, "egressConfig": []}',
        "[]",
    ],
)
def test_malformed_json(data):
    with pytest.raises(ConfigError, match="^failed to parse network config"):
        parse_net_config(data)


@pytest.mark.parametrize("port", [1, 80, 65535])
def test_validate_port_range_accepts(port):
    assert validate_port_range(port) is None


@pytest.mark.parametrize("port", [0, -1, 65536, 80000])
def test_validate_port_range_rejects(port):
    with pytest.raises(ConfigError) as info:
        validate_port_range(port)
    assert str(info.value) == f"invalid port {port} specified"


def test_config_error_is_value_error():
    with pytest.raises(ValueError):
        parse_net_config(_doc())