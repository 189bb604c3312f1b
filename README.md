# vpccni

Configuration handling and traffic redirection logic for two container
networking plugins:

- **ECS Service Connect**: parses the plugin's JSON network configuration
  and installs or removes the ingress and egress redirection rules (NAT
  `REDIRECT`, TPROXY to a port, or a route through a redirect IP) in a
  container's network namespace.
- **VPC branch ENI**: parses the branch ENI network configuration,
  including per-container overrides given as `KEY=VALUE;...` arguments.

The package has no runtime dependencies.

## Service Connect configuration

```python
from vpccni.serviceconnect_config import ConfigError, parse_net_config

data = b"""
{
  "cniVersion": "1.0.0",
  "name": "service-connect",
  "type": "ecs-serviceconnect",
  "ingressConfig": [{"listenerPort": 30000, "interceptPort": 8080}],
  "egressConfig": {
    "listenerPort": 30002,
    "redirectMode": "nat",
    "vip": {"ipv4Cidr": "127.255.0.0/16"}
  },
  "enableIPv4": true
}
"""

try:
    config = parse_net_config(data)
except ConfigError as exc:
    print(f"rejected: {exc}")
else:
    print(config.ingress_listener_to_intercept_port_map)  # {30000: 8080}
    print(config.egress_port, config.egress_ipv4_cidr)     # 30002 127.255.0.0/16
```

`parse_net_config` accepts `bytes` or `str` and returns a `NetConfig`
dataclass. Invalid documents raise `ConfigError` (a `ValueError`) with
messages such as `"either IngressConfig or EgressConfig must be present"`,
`"both V4 and V6 cannot be disabled"` or
`"invalid parameter: Egress RedirectMode"`. Ports are checked with
`validate_port_range`, which accepts 1 to 65535.

Rules of note:

- At least one of `enableIPv4` / `enableIPv6` must be true; the enabled
  families appear in `NetConfig.ip_protocols` as `IPProtocol` members.
- Ingress entries without an `interceptPort` are validated but left out of
  the port map.
- `egressConfig` needs exactly one of `listenerPort` and `redirectIP`, a
  `redirectMode` of `nat` (which requires `listenerPort`) or `tproxy`, and a
  `vip` with a CIDR for every enabled family.

## Applying Service Connect rules

The rule functions work against two interfaces supplied by the caller,
defined as protocols in `vpccni.egress`:

- `IPTables`: `new_chain`, `append`, `delete`, `clear_chain`,
  `delete_chain`, each taking a table, a chain and (for rules) a rule
  specification as separate string arguments.
- `Routing`: `add_route`, `delete_route`, `list_routes`, `add_rule`,
  `delete_rule`, `list_rules` and `link_index`, working with the `Route`
  and `Rule` dataclasses; failures are expected as `OSError`.

Functions:

- `vpccni.ingress.setup_ingress_rules` / `delete_ingress_rules` manage the
  `ECS_SERVICE_CONNECT_INGRESS` chain in the `nat` table and the
  `PREROUTING` jump for non-local TCP traffic.
- `vpccni.egress.setup_egress_rules` / `delete_egress_rules` install or
  remove, depending on the redirect mode, a NAT `REDIRECT` rule in `OUTPUT`
  for the VIP CIDR; the TPROXY setup using the `ECS_SERVICE_CONNECT_DIVERT`
  chain in the `mangle` table, a policy rule for mark 1 and a local default
  route on `lo` in table 100; or a route to the VIP CIDR through the
  redirect IP. `cidr_for` and `default_cidr` give the CIDRs used.

`vpccni.serviceconnect.ServiceConnectPlugin` ties these together for the
ADD and DEL commands:

```python
from vpccni.serviceconnect import CmdArgs, ServiceConnectPlugin

plugin = ServiceConnectPlugin(iptables_factory, routing, namespace_runner)
args = CmdArgs(netns="/var/run/netns/example", if_name="eth0", stdin_data=data)
result = plugin.add(args)
plugin.delete(args)
```

- `iptables_factory` is called with an `IPProtocol` and returns an
  `IPTables` for that family.
- `namespace_runner(netns, fn)` runs `fn` inside the named namespace and
  returns its value, raising `OSError` if the namespace cannot be found.

`add` returns the CNI result as a dict
(`{"cniVersion": ..., "interfaces": [{"name": ..., "sandbox": ...}], "dns": {}}`)
and raises `ConfigError` if the configuration's `cniVersion` is not one of
0.3.0, 0.3.1, 0.4.0 or 1.0.0. Failures while installing rules during `add`
are logged and do not stop the result from being returned. `delete` raises
on the first failure.

## Branch ENI configuration

```python
from vpccni.branch_config import parse_branch_net_config

config = parse_branch_net_config(
    b'{"trunkName": "eth1", "interfaceType": "vlan"}',
    "BranchVlanID=10;BranchMACAddress=02:00:00:00:00:01;IPAddresses=192.168.1.2/16",
)
print(config.branch_vlan_id, config.branch_mac_address)  # 10 02:00:00:00:00:01
```

`parse_branch_net_config(data, args)` returns a `BranchNetConfig`. The
per-container arguments `BranchVlanID`, `BranchMACAddress`, `IPAddresses`
and `GatewayIPAddresses` override the JSON values; other keys are ignored.
Either `trunkName` or `trunkMACAddress` is required, as are the branch VLAN
ID and MAC address. The interface type (`InterfaceType`) defaults to `tap`,
which requires `uid` and `gid` and yields a `TAPConfig` with one queue.
Errors raise `ConfigError`.

Helpers: `parse_cni_args` splits a `K1=V1;K2=V2` string into a dict, and
`parse_ip_network` parses an address with prefix length (such as
`10.11.12.13/16`) into an `ipaddress` interface, keeping the host bits.

## What this package does not do

- It ships no `iptables`, netlink or network namespace implementation: the
  packet filter, routing and namespace switching must be provided by the
  caller through the interfaces above.
- It provides no command-line executable; nothing reads CNI environment
  variables or writes results to stdout.
- For branch ENIs it only parses configuration; it does not create trunk,
  branch, VLAN, TAP or MACVTAP links.

## Running the tests

Install the `test` extra and run `pytest` from the project root.