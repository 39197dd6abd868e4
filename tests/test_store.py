"""Tests for the SQLite-backed certificate and domain stores."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from certflow.ssl.types import (
    PENDING_STATUSES,
    CertificateStatus,
    ChallengeType,
    CreateConflict,
    Created,
    SslMode,
)
from certflow.utils.time import utcnow


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------


class TestDomainStore:
    @pytest.mark.asyncio
    async def test_create_normalizes_hostname(self, domain_store):
        domain = await domain_store.create("  Docs.Example.COM. ", "project-1")

        assert domain.hostname == "docs.example.com"
        assert domain.verified is False
        assert domain.ssl_mode is SslMode.NONE
        assert domain.force_https is False
        assert len(domain.id) == 32

    @pytest.mark.asyncio
    async def test_create_accepts_unicode_hostname(self, domain_store):
        domain = await domain_store.create("bücher.example", "project-1")
        assert domain.hostname == "xn--bcher-kva.example"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hostname", ["", "localhost", "-bad.example.com", "a..example.com"])
    async def test_create_rejects_invalid_hostname(self, domain_store, hostname):
        with pytest.raises(ValueError):
            await domain_store.create(hostname, "project-1")

    @pytest.mark.asyncio
    async def test_mark_verified_and_lookup(self, domain_store):
        domain = await domain_store.create("shop.example.net", "project-2")
        assert await domain_store.mark_verified(domain.id) is True

        loaded = await domain_store.get_by_hostname("shop.example.net")
        assert loaded is not None
        assert loaded.verified is True
        assert loaded.verified_at is not None

    @pytest.mark.asyncio
    async def test_list_all_filters_by_project(self, domain_store):
        await domain_store.create("a.example.com", "project-1")
        await domain_store.create("b.example.com", "project-2")

        assert [d.hostname for d in await domain_store.list_all("project-2")] == ["b.example.com"]
        assert len(await domain_store.list_all()) == 2

    @pytest.mark.asyncio
    async def test_set_ssl_mode_can_clear_force_https(self, domain_store, domain):
        await domain_store.set_force_https(domain.id, True)
        await domain_store.set_ssl_mode(domain.id, SslMode.EXTERNAL, force_https=False)

        loaded = await domain_store.get(domain.id)
        assert loaded.ssl_mode is SslMode.EXTERNAL
        assert loaded.force_https is False

    @pytest.mark.asyncio
    async def test_delete_cascades_to_certificates(self, domain_store, certificate_store, domain):
        result = await certificate_store.create(domain.id, ChallengeType.HTTP01)
        assert isinstance(result, Created)

        assert await domain_store.delete(domain.id) is True
        assert await certificate_store.get(result.certificate.id) is None


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


class TestCertificateStore:
    @pytest.mark.asyncio
    async def test_create_reserves_pending_row(self, certificate_store, domain):
        result = await certificate_store.create(domain.id, ChallengeType.DNS01)

        assert isinstance(result, Created)
        cert = result.certificate
        assert cert.status is CertificateStatus.PENDING_DNS01
        assert cert.order_id is None
        assert cert.dns_submit_attempts == 0
        assert cert.is_pollable is False

    @pytest.mark.asyncio
    async def test_second_pending_row_conflicts(self, certificate_store, domain):
        first = await certificate_store.create(domain.id, ChallengeType.HTTP01)
        second = await certificate_store.create(domain.id, ChallengeType.DNS01)

        assert isinstance(second, CreateConflict)
        assert second.existing_id == first.certificate.id
        assert len(await certificate_store.list_by_domain(domain.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_leave_one_pending_row(self, certificate_store, domain):
        results = await asyncio.gather(
            *(certificate_store.create(domain.id, ChallengeType.HTTP01) for _ in range(5))
        )

        created = [r for r in results if isinstance(r, Created)]
        conflicts = [r for r in results if isinstance(r, CreateConflict)]
        assert len(created) == 1
        assert len(conflicts) == 4
        assert {c.existing_id for c in conflicts} == {created[0].certificate.id}

    @pytest.mark.asyncio
    async def test_terminal_row_frees_pending_slot(self, certificate_store, domain):
        first = (await certificate_store.create(domain.id, ChallengeType.HTTP01)).certificate
        await certificate_store.update_status(first.id, CertificateStatus.FAILED, expected=PENDING_STATUSES)

        second = await certificate_store.create(domain.id, ChallengeType.HTTP01)
        assert isinstance(second, Created)

    @pytest.mark.asyncio
    async def test_create_for_unknown_domain_raises(self, certificate_store):
        with pytest.raises(sqlite3.IntegrityError):
            await certificate_store.create("0" * 32, ChallengeType.HTTP01)

    @pytest.mark.asyncio
    async def test_update_status_is_compare_and_set(self, certificate_store, domain):
        cert = (await certificate_store.create(domain.id, ChallengeType.HTTP01)).certificate

        assert await certificate_store.update_status(
            cert.id, CertificateStatus.CANCELLED, expected=PENDING_STATUSES
        ) is True
        # A late ISSUED write must not overwrite the cancellation
        assert await certificate_store.update_status(
            cert.id, CertificateStatus.ISSUED, expected=PENDING_STATUSES, issued_at=utcnow()
        ) is False

        loaded = await certificate_store.get(cert.id)
        assert loaded.status is CertificateStatus.CANCELLED
        assert loaded.issued_at is None

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_columns(self, certificate_store, domain):
        cert = (await certificate_store.create(domain.id, ChallengeType.HTTP01)).certificate
        with pytest.raises(ValueError, match="Unknown certificate columns"):
            await certificate_store.update_status(cert.id, expected=PENDING_STATUSES, domain_id="x")

    @pytest.mark.asyncio
    async def test_record_dns_attempt_counts_only_while_pending(self, certificate_store, domain):
        cert = (await certificate_store.create(domain.id, ChallengeType.DNS01)).certificate

        assert await certificate_store.record_dns_attempt(cert.id) == 1
        assert await certificate_store.record_dns_attempt(cert.id) == 2
        await certificate_store.update_status(cert.id, CertificateStatus.FAILED, expected=PENDING_STATUSES)
        assert await certificate_store.record_dns_attempt(cert.id) is None

    @pytest.mark.asyncio
    async def test_set_last_error_counts_renewal_attempts(self, certificate_store, domain):
        cert = (await certificate_store.create(domain.id, ChallengeType.HTTP01)).certificate

        await certificate_store.set_last_error(cert.id, "first", count_renewal_attempt=True)
        await certificate_store.set_last_error(cert.id, "second")

        loaded = await certificate_store.get(cert.id)
        assert loaded.last_error == "second"
        assert loaded.renewal_attempts == 1
        assert loaded.status is CertificateStatus.PENDING_HTTP01

    @pytest.mark.asyncio
    async def test_http_token_lookup_only_matches_pending(self, certificate_store, domain):
        cert = (await certificate_store.create(domain.id, ChallengeType.HTTP01)).certificate
        await certificate_store.update_status(
            cert.id, expected=PENDING_STATUSES, order_id="o-1", http_token="tok", http_key_authorization="tok.k"
        )

        found = await certificate_store.get_by_http_token("tok")
        assert found is not None and found.id == cert.id

        await certificate_store.update_status(cert.id, CertificateStatus.CANCELLED, expected=PENDING_STATUSES)
        assert await certificate_store.get_by_http_token("tok") is None

    @pytest.mark.asyncio
    async def test_list_expiring_flags_domains_with_pending_issuance(
        self, certificate_store, domain_store, domain
    ):
        other = await domain_store.create("api.example.com", "project-1", verified=True)
        now = utcnow()
        for target in (domain, other):
            cert = (await certificate_store.create(target.id, ChallengeType.HTTP01)).certificate
            await certificate_store.update_status(
                cert.id,
                CertificateStatus.ISSUED,
                expected=PENDING_STATUSES,
                order_id=f"o-{target.id}",
                issued_at=now - timedelta(days=80),
                expires_at=now + timedelta(days=10),
            )
        await certificate_store.create(other.id, ChallengeType.HTTP01)

        expiring = await certificate_store.list_expiring(now + timedelta(days=30), limit=10)
        by_host = {hostname: has_pending for _cert, hostname, has_pending in expiring}
        assert by_host == {"docs.example.com": False, "api.example.com": True}

        assert await certificate_store.list_expiring(now + timedelta(days=5), limit=10) == []
        assert await certificate_store.count_expiring(now + timedelta(days=30)) == 2

    @pytest.mark.asyncio
    async def test_count_created_since_groups_by_registered_domain(
        self, certificate_store, domain_store, domain
    ):
        sibling = await domain_store.create("www.example.com", "project-9", verified=True)
        unrelated = await domain_store.create("www.notexample.com", "project-9", verified=True)
        for target in (domain, sibling, unrelated):
            await certificate_store.create(target.id, ChallengeType.HTTP01)

        since = utcnow() - timedelta(days=7)
        assert await certificate_store.count_created_since("example.com", since) == 2
        assert await certificate_store.count_created_since("notexample.com", since) == 1
        assert await certificate_store.count_created_since("example.com", utcnow() + timedelta(seconds=5)) == 0

    @pytest.mark.asyncio
    async def test_get_active_prefers_latest_issued(self, certificate_store, domain):
        now = utcnow()
        ids = []
        for age in (60, 5):
            cert = (await certificate_store.create(domain.id, ChallengeType.HTTP01)).certificate
            await certificate_store.update_status(
                cert.id,
                CertificateStatus.ISSUED,
                expected=PENDING_STATUSES,
                issued_at=now - timedelta(days=age),
                expires_at=now + timedelta(days=90 - age),
            )
            ids.append(cert.id)

        active = await certificate_store.get_active(domain.id)
        assert active.id == ids[1]
        assert await certificate_store.count_by_status() == {"ISSUED": 2}
