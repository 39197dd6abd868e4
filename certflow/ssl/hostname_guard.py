#!/usr/bin/env python3
#
# certflow/ssl/hostname_guard.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Refuse certificate issuance for hostnames that point at internal networks."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from ipaddress import IPv4Address, IPv6Address

import idna

__all__ = [
    "normalize_hostname",
    "is_private_address",
    "registered_domain",
    "resolve_addresses",
    "find_private_address",
]

_log = logging.getLogger(__name__)

_HOST_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def normalize_hostname(hostname: str) -> str:
    """Validate a customer hostname and return its ASCII (IDNA 2008) form.

    Raises:
        ValueError: empty, too long, single label or malformed hostname
    """
    value = hostname.strip().strip(".").lower()
    if not value:
        raise ValueError("Hostname is required")
    try:
        ascii_host = idna.encode(value, uts46=True).decode("ascii")
    except idna.IDNAError as exc:
        raise ValueError(f"Invalid hostname: {hostname}") from exc

    if len(ascii_host) > 253:
        raise ValueError(f"Hostname too long (max 253): {hostname}")
    labels = ascii_host.split(".")
    if len(labels) < 2:
        raise ValueError(f"Hostname must contain a registered domain: {hostname}")
    for label in labels:
        if not _HOST_LABEL_RE.fullmatch(label):
            raise ValueError(f"Invalid hostname label: {label}")
    return ascii_host


def is_private_address(ip_obj: IPv4Address | IPv6Address) -> bool:
    """True for private, loopback, link-local, reserved, unspecified and ULA addresses."""
    if isinstance(ip_obj, IPv6Address) and ip_obj.ipv4_mapped is not None:
        ip_obj = ip_obj.ipv4_mapped
    return (
        ip_obj.is_private
        or ip_obj.is_loopback
        or ip_obj.is_link_local
        or ip_obj.is_reserved
        or ip_obj.is_unspecified
        or ip_obj.is_multicast
    )


def registered_domain(hostname: str) -> str:
    """Last two labels of a hostname (``blog.acme.com`` -> ``acme.com``)."""
    labels = [label for label in hostname.lower().rstrip(".").split(".") if label]
    return ".".join(labels[-2:])


async def resolve_addresses(hostname: str) -> list[IPv4Address | IPv6Address]:
    """A/AAAA addresses of ``hostname``; empty when resolution fails."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError, OSError) as exc:
        _log.debug("HOSTNAME_GUARD resolution failed for %s: %s", hostname, exc)
        return []

    addresses: list[IPv4Address | IPv6Address] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        try:
            ip_obj = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if ip_obj not in addresses:
            addresses.append(ip_obj)
    return addresses


async def find_private_address(hostname: str) -> IPv4Address | IPv6Address | None:
    """First internal address ``hostname`` resolves to, or None.

    Literal IP hostnames are checked directly. Resolution failures are not
    an error here: the CA reports unreachable hostnames itself.
    """
    try:
        literal = ipaddress.ip_address(hostname)
    except ValueError:
        literal = None
    if literal is not None:
        return literal if is_private_address(literal) else None

    for ip_obj in await resolve_addresses(hostname):
        if is_private_address(ip_obj):
            return ip_obj
    return None
