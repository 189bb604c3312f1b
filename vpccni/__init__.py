"""Configuration parsing and redirection rules for Service Connect and branch ENI networking."""

__version__ = "0.1.0"

__all__ = [
    "branch_config",
    "egress",
    "ingress",
    "serviceconnect",
    "serviceconnect_config",
]