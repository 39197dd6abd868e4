#!/usr/bin/env python3
#
# certflow/ssl/renewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Automatic renewal sweep and certificate health summary."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TypedDict

from .errors import CertificateError
from .orchestrator import LifecycleOrchestrator
from .types import ChallengeType
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["RenewalSummary", "run_auto_renewal", "check_certificate_health"]

DNS01_MANUAL_RENEWAL = "DNS-01 certificate requires manual renewal via domain settings."


class RenewalError(TypedDict):
	domain: str
	error: str


class RenewalSummary(TypedDict):
	checked: int
	renewed: int
	skipped: int
	failed: int
	errors: list[RenewalError]


async def run_auto_renewal(
	orchestrator: LifecycleOrchestrator,
	*,
	threshold_days: int = 30,
	batch_size: int = 10,
) -> RenewalSummary:
	"""Renew active certificates that expire within ``threshold_days``.

	Domains with an issuance already in flight are skipped. DNS-01
	certificates cannot renew unattended; they are flagged for the owner.
	"""
	now = utcnow()
	threshold = now + timedelta(days=threshold_days)
	store = orchestrator.certificates

	expiring = await store.list_expiring(threshold, batch_size)
	eligible = [(cert, hostname) for cert, hostname, has_pending in expiring if not has_pending]
	_log.info(
		"RENEWAL threshold=%dd found=%d eligible=%d already_pending=%d",
		threshold_days,
		len(expiring),
		len(eligible),
		len(expiring) - len(eligible),
	)

	summary: RenewalSummary = {
		"checked": len(expiring),
		"renewed": 0,
		"skipped": len(expiring) - len(eligible),
		"failed": 0,
		"errors": [],
	}

	for cert, hostname in eligible:
		days_left = (cert.expires_at - now).days if cert.expires_at else None
		if cert.challenge_type is ChallengeType.DNS01:
			await store.set_last_error(cert.id, DNS01_MANUAL_RENEWAL, count_renewal_attempt=True)
			summary["failed"] += 1
			summary["errors"].append({"domain": hostname, "error": DNS01_MANUAL_RENEWAL})
			_log.warning("RENEWAL domain=%s cert=%s needs manual DNS-01 renewal", hostname, cert.id)
			continue

		try:
			new_cert = await orchestrator.renew(cert.id)
		except CertificateError as exc:
			summary["failed"] += 1
			summary["errors"].append({"domain": hostname, "error": exc.message})
			await store.set_last_error(cert.id, f"Auto-renewal failed: {exc.message}", count_renewal_attempt=True)
			_log.error("RENEWAL domain=%s cert=%s failed: %s", hostname, cert.id, exc.message)
			continue

		summary["renewed"] += 1
		_log.info(
			"RENEWAL domain=%s cert=%s renewal=%s started (expires in %s days)",
			hostname,
			cert.id,
			new_cert.id,
			days_left if days_left is not None else "?",
		)

	_log.info(
		"RENEWAL done checked=%d renewed=%d skipped=%d failed=%d",
		summary["checked"],
		summary["renewed"],
		summary["skipped"],
		summary["failed"],
	)
	return summary


async def check_certificate_health(
	orchestrator: LifecycleOrchestrator,
	*,
	threshold_days: int = 30,
) -> dict[str, int]:
	"""Certificate counts for monitoring."""
	store = orchestrator.certificates
	now = utcnow()
	by_status = await store.count_by_status()
	return {
		"total": sum(by_status.values()),
		"issued": by_status.get("ISSUED", 0),
		"expiring_soon": await store.count_expiring(now + timedelta(days=threshold_days)),
		"expired": await store.count_expiring(now),
		"pending": by_status.get("PENDING_HTTP01", 0) + by_status.get("PENDING_DNS01", 0),
		"failed": by_status.get("FAILED", 0),
		"revoked": by_status.get("REVOKED", 0),
		"cancelled": by_status.get("CANCELLED", 0),
	}
