"""Host header parsing."""

import ipaddress
from typing import Optional

RESERVED_LABELS = frozenset({"www", "api", "localhost"})


def strip_port(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("["):
        return host[1:host.find("]")] if "]" in host else host[1:]
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def subdomain_of(host: str) -> Optional[str]:
    """Leftmost label of ``host`` when it names a tenant.

    ``acme.chatdesk.io`` -> ``acme``; ``acme.localhost:3000`` -> ``acme``;
    bare domains, IP addresses, ``localhost`` and reserved labels -> None.
    """
    if not host:
        return None
    name = strip_port(host).rstrip(".")
    if not name or is_ip(name):
        return None
    labels = name.split(".")
    if labels[-1] == "localhost":
        if len(labels) < 2:
            return None
    elif len(labels) < 3:
        return None
    label = labels[0]
    if not label or label in RESERVED_LABELS:
        return None
    return label
