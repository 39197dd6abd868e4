"""Hostname normalization and internal address detection."""

from __future__ import annotations

import ipaddress

import pytest

from certflow.ssl import hostname_guard
from certflow.ssl.hostname_guard import (
    find_private_address,
    is_private_address,
    normalize_hostname,
    registered_domain,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Docs.Example.com", "docs.example.com"),
        ("docs.example.com.", "docs.example.com"),
        ("münchen.example", "xn--mnchen-3ya.example"),
    ],
)
def test_normalize_hostname(raw, expected):
    assert normalize_hostname(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "example", "under_score.example.com", "a" * 64 + ".example.com"])
def test_normalize_hostname_rejects(raw):
    with pytest.raises(ValueError):
        normalize_hostname(raw)


@pytest.mark.parametrize(
    "address,private",
    [
        ("10.0.0.1", True),
        ("127.0.0.1", True),
        ("169.254.169.254", True),
        ("::1", True),
        ("fd00::1", True),
        ("::ffff:192.168.1.1", True),
        ("8.8.8.8", False),
        ("2606:4700:4700::1111", False),
    ],
)
def test_is_private_address(address, private):
    assert is_private_address(ipaddress.ip_address(address)) is private


def test_registered_domain():
    assert registered_domain("blog.acme.com") == "acme.com"
    assert registered_domain("acme.com.") == "acme.com"


@pytest.mark.asyncio
async def test_literal_addresses_are_checked_directly():
    assert await find_private_address("192.168.0.10") == ipaddress.ip_address("192.168.0.10")
    assert await find_private_address("1.1.1.1") is None


@pytest.mark.asyncio
async def test_resolved_private_address_is_reported(monkeypatch):
    async def fake_resolve(hostname):
        return [ipaddress.ip_address("93.184.216.34"), ipaddress.ip_address("10.20.30.40")]

    monkeypatch.setattr(hostname_guard, "resolve_addresses", fake_resolve)

    assert await find_private_address("intranet.example.com") == ipaddress.ip_address("10.20.30.40")


@pytest.mark.asyncio
async def test_unresolvable_hostname_is_not_blocked(monkeypatch):
    async def fake_resolve(hostname):
        return []

    monkeypatch.setattr(hostname_guard, "resolve_addresses", fake_resolve)

    assert await find_private_address("nowhere.example.com") is None
