"""Rate limiting configuration for the scalingad backend.

Requests are keyed by client IP. ``X-Forwarded-For`` is honored only when
the direct peer is a trusted proxy, so clients can't spoof their key.
"""

import ipaddress
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from .logging_config import get_logger

logger = get_logger("scalingad.rate_limit")

# Limits shared by the routers
COMMAND_LIMIT = "30/minute"  # state-changing job commands
MONEY_LIMIT = "10/minute"  # calls that reach the payment processor
QUERY_LIMIT = "120/minute"
# The processor retries in bursts after an outage; keep headroom
WEBHOOK_LIMIT = "600/minute"
ADMIN_LIMIT = "10/minute"

# Override with TRUSTED_PROXY_CIDRS env var (comma-separated CIDRs)
_DEFAULT_TRUSTED_CIDRS = [
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "::1/128",
]

_trusted_networks: list | None = None


def _load_trusted_cidrs() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """Load trusted proxy CIDRs from env or defaults."""
    raw = os.environ.get("TRUSTED_PROXY_CIDRS", "")
    cidrs = [s.strip() for s in raw.split(",") if s.strip()] if raw else _DEFAULT_TRUSTED_CIDRS
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr!r}")
    return networks


def _get_trusted_networks():
    global _trusted_networks
    if _trusted_networks is None:
        _trusted_networks = _load_trusted_cidrs()
    return _trusted_networks


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in _get_trusted_networks())


def get_client_ip(request) -> str:
    """Resolve the client IP, using the leftmost forwarded address behind a trusted proxy."""
    direct_ip = get_remote_address(request)

    if _is_trusted_proxy(direct_ip):
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()
            if client_ip:
                return client_ip

    return direct_ip


limiter = Limiter(
    key_func=get_client_ip,
    enabled=os.environ.get("RATE_LIMIT_ENABLED", "true").lower() != "false",
)
