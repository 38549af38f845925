from __future__ import annotations

import ipaddress
import re
from typing import Optional, Union

from threatwatch.models import HashKind

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

EMAIL_RE = re.compile(r"^[a-z0-9._%+-]{1,64}@([a-z0-9-]+\.)+[a-z]{2,63}$")
LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
HEX_RE = re.compile(r"^[0-9a-f]+$")

_REFANG_RULES = [
    (re.compile(r"hxxp", re.IGNORECASE), "http"),
    (re.compile(r"\[dot\]", re.IGNORECASE), "."),
    (re.compile(r"\[\.\]|\(\.\)"), "."),
    (re.compile(r"\[:\]"), ":"),
    (re.compile(r"\[@\]|\[at\]", re.IGNORECASE), "@"),
]
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")

# RFC1918, loopback, link-local and the IPv6 private ranges
NON_PUBLIC_NETWORKS = [
    ipaddress.ip_network(n)
    for n in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
    )
]

_HASH_KINDS = {32: HashKind.MD5, 40: HashKind.SHA1, 64: HashKind.SHA256}


def refang(text: str) -> str:
    # repeat until stable: "[[.]]" only collapses to "." on the second pass
    while True:
        out = text
        for pattern, repl in _REFANG_RULES:
            out = pattern.sub(repl, out)
        if out == text:
            return out
        text = out


def normalize_domain(domain: str) -> str:
    """Bare lowercase host from a possibly defanged domain or URL."""
    d = _SCHEME_RE.sub("", refang(domain.strip().lower()))
    d = re.split(r"[/?#]", d, maxsplit=1)[0]
    d = d.rsplit("@", 1)[-1].split(":", 1)[0]
    return d.strip(".")


def parse_ip(value: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(refang(value.strip()))
    except ValueError:
        return None


def is_valid_ip(value: str) -> bool:
    return parse_ip(value) is not None


def is_public_ip(value: str) -> bool:
    addr = parse_ip(value)
    if addr is None:
        return False
    # ::ffff:a.b.c.d is judged by the IPv4 address it carries
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if addr.is_unspecified:
        return False
    return not any(addr.version == net.version and addr in net for net in NON_PUBLIC_NETWORKS)


def is_valid_domain(value: str) -> bool:
    v = normalize_domain(value)
    if not 3 <= len(v) <= 253:
        return False
    labels = v.split(".")
    if len(labels) < 2 or not labels[-1].isalpha():
        return False
    return all(LABEL_RE.match(label) for label in labels)


def is_valid_email(value: str) -> bool:
    v = value.strip().lower()
    if len(v) > 254 or not EMAIL_RE.fullmatch(v):
        return False
    local, _, domain = v.partition("@")
    if local.startswith(".") or local.endswith(".") or ".." in local:
        return False
    return is_valid_domain(domain)


def hash_kind(value: str) -> Optional[HashKind]:
    v = value.strip().lower()
    if not HEX_RE.match(v):
        return None
    return _HASH_KINDS.get(len(v))


def is_valid_hash(value: str) -> bool:
    return hash_kind(value) is not None
