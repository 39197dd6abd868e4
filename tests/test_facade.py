"""Domain SSL settings on top of the orchestrator."""

from __future__ import annotations

import pytest

from certflow.ssl.errors import DomainNotFound, PreconditionFailed
from certflow.ssl.facade import DomainSettingsFacade
from certflow.ssl.types import CertificateStatus, ChallengeType, SslMode

from conftest import wait_for_status, wait_until


@pytest.fixture()
def facade(orchestrator) -> DomainSettingsFacade:
    return DomainSettingsFacade(orchestrator)


async def _issue(orchestrator, domain_id):
    cert = await orchestrator.issue_certificate(domain_id, ChallengeType.HTTP01)
    await wait_for_status(orchestrator, cert.id, CertificateStatus.ISSUED)
    await wait_until(lambda: not orchestrator.poller.is_polling(cert.id))
    return cert


@pytest.mark.asyncio
async def test_lets_encrypt_without_certificate_needs_issuance(facade, domain):
    active = await facade.set_ssl_mode(domain.id, SslMode.LETS_ENCRYPT)

    assert active is None
    assert (await facade.domains.get(domain.id)).ssl_mode is SslMode.LETS_ENCRYPT


@pytest.mark.asyncio
async def test_switching_back_reuses_issued_certificate(facade, orchestrator, domain):
    cert = await _issue(orchestrator, domain.id)
    await facade.toggle_force_https(domain.id, True)

    assert await facade.set_ssl_mode(domain.id, SslMode.EXTERNAL) is None
    stored = await facade.domains.get(domain.id)
    assert stored.ssl_mode is SslMode.EXTERNAL
    assert stored.force_https is False
    # Leaving Let's Encrypt does not revoke anything
    assert (await orchestrator.get_status(cert.id)).status is CertificateStatus.ISSUED

    active = await facade.set_ssl_mode(domain.id, SslMode.LETS_ENCRYPT)
    assert active is not None and active.id == cert.id


@pytest.mark.asyncio
async def test_force_https_requires_issued_certificate(facade, orchestrator, domain):
    with pytest.raises(PreconditionFailed, match="issued certificate is required"):
        await facade.toggle_force_https(domain.id, True)

    # Turning it off is always allowed
    assert await facade.toggle_force_https(domain.id, False) is False

    await _issue(orchestrator, domain.id)
    assert await facade.toggle_force_https(domain.id, True) is True
    assert (await facade.domains.get(domain.id)).force_https is True


@pytest.mark.asyncio
async def test_summary_exposes_pending_certificate(facade, orchestrator, issuer, domain):
    issuer.ticks_to_issue = None
    pending = await orchestrator.issue_certificate(domain.id, ChallengeType.HTTP01)

    summary = await facade.get_ssl_summary(domain.id)

    assert summary["domain"].id == domain.id
    assert summary["active"] is None
    assert summary["pending"].id == pending.id


@pytest.mark.asyncio
async def test_unknown_domain(facade):
    with pytest.raises(DomainNotFound):
        await facade.get_ssl_summary("0" * 32)
    with pytest.raises(DomainNotFound):
        await facade.set_ssl_mode("0" * 32, SslMode.NONE)
