#!/usr/bin/env python3
#
# certflow/ssl/orchestrator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle orchestrator.

State machine::

	(none) --issue--> PENDING_HTTP01 --poller--> ISSUED | FAILED
	(none) --issue--> PENDING_DNS01 --submit--> (poller) --> ISSUED | FAILED
	PENDING_* --cancel--> CANCELLED
	ISSUED --renew--> new PENDING_* row (old row stays ISSUED)
	ISSUED --revoke--> REVOKED

Every status write is a compare-and-set on the persisted status. The pending
row is reserved before the CA is contacted, so a caller that loses the race
for a domain never opens a second CA order.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from ..db.store import CertificateStore, DomainStore
from ..utils.config import Config
from ..utils.time import ensure_utc, utcnow
from .errors import (
	CAError,
	CertificateNotFound,
	ConflictError,
	DomainNotFound,
	InvalidTransition,
	IssuerUnavailable,
	IssuanceTimeout,
	NotYetPropagated,
	PreconditionFailed,
	RateLimited,
)
from .hostname_guard import find_private_address, normalize_hostname, registered_domain
from .issuer import ChallengeIssuer
from .notifications import (
	EVENT_CANCELLED,
	EVENT_FAILED,
	EVENT_ISSUED,
	EVENT_RENEWED,
	EVENT_REVOKED,
	IssuanceEvent,
	Notifier,
)
from .poller import CHALLENGE_FIELDS_CLEARED, VerificationPoller
from .types import (
	PENDING_STATUSES,
	Certificate,
	CertificateStatus,
	CertificateStatusView,
	ChallengeType,
	CreateConflict,
	Domain,
	SslMode,
)

_log = logging.getLogger(__name__)

__all__ = ["LifecycleOrchestrator"]

_BUDGET_WINDOW = timedelta(days=7)


class LifecycleOrchestrator:
	"""Drives certificates through their lifecycle.

	Owns the verification sessions of this process. Other processes (and
	other UI sessions) only observe the persisted status.
	"""

	def __init__(
		self,
		certificates: CertificateStore,
		domains: DomainStore,
		issuer: ChallengeIssuer,
		*,
		notifier: Notifier | None = None,
		poll_interval: float = 3.0,
		poll_timeout: float = 600.0,
		dns_submit_max_attempts: int = 20,
		dns_challenge_ttl: float = 86400.0,
		max_issuances_per_week: int = 45,
		hostname_guard: bool = True,
	) -> None:
		self.certificates = certificates
		self.domains = domains
		self.issuer = issuer
		self.notifier = notifier or Notifier()
		self.dns_submit_max_attempts = dns_submit_max_attempts
		self.dns_challenge_ttl = timedelta(seconds=dns_challenge_ttl)
		self.max_issuances_per_week = max_issuances_per_week
		self.hostname_guard = hostname_guard
		self.poller = VerificationPoller(
			certificates,
			issuer,
			interval=poll_interval,
			timeout=poll_timeout,
			on_resolved=self._on_resolved,
		)

	@classmethod
	def from_config(
		cls,
		config: Config,
		issuer: ChallengeIssuer,
		*,
		notifier: Notifier | None = None,
	) -> "LifecycleOrchestrator":
		return cls(
			CertificateStore(config.db_path),
			DomainStore(config.db_path),
			issuer,
			notifier=notifier,
			poll_interval=config.poll_interval,
			poll_timeout=config.poll_timeout,
			dns_submit_max_attempts=config.dns_submit_max_attempts,
			dns_challenge_ttl=config.dns_challenge_ttl,
			max_issuances_per_week=config.max_issuances_per_week,
			hostname_guard=config.hostname_guard,
		)

	# ------------------------------------------------------------------
	# Lookups
	# ------------------------------------------------------------------

	async def _require_domain(self, domain_id: str) -> Domain:
		domain = await self.domains.get(domain_id)
		if domain is None:
			raise DomainNotFound(domain_id)
		return domain

	async def _require_certificate(self, cert_id: str) -> Certificate:
		cert = await self.certificates.get(cert_id)
		if cert is None:
			raise CertificateNotFound(cert_id)
		return cert

	async def get_status(self, cert_id: str) -> CertificateStatusView:
		"""Persisted status of a certificate. Never contacts the CA."""
		cert = await self._require_certificate(cert_id)
		domain = await self.domains.get(cert.domain_id)
		return CertificateStatusView(
			cert_id=cert.id,
			domain_id=cert.domain_id,
			hostname=domain.hostname if domain else "",
			status=cert.status,
			challenge_type=cert.challenge_type,
			error=cert.last_error,
			issued_at=cert.issued_at,
			expires_at=cert.expires_at,
			renewal_attempts=cert.renewal_attempts,
			dns_txt_name=cert.dns_txt_name if cert.is_pending else None,
			dns_txt_value=cert.dns_txt_value if cert.is_pending else None,
			dns_submitted=cert.dns_submitted_at is not None,
			polling=self.poller.is_polling(cert.id),
		)

	async def list_certificates(self, domain_id: str) -> list[Certificate]:
		await self._require_domain(domain_id)
		return await self.certificates.list_by_domain(domain_id)

	async def get_active_certificate(self, domain_id: str) -> Optional[Certificate]:
		return await self.certificates.get_active(domain_id)

	async def get_active_bundle(self, hostname: str) -> Optional[Certificate]:
		"""Active certificate the edge agent should serve for ``hostname``.

		None unless the domain is on managed SSL and its newest ISSUED row
		carries a PEM and an expiry.
		"""
		try:
			hostname = normalize_hostname(hostname)
		except ValueError:
			return None
		domain = await self.domains.get_by_hostname(hostname)
		if domain is None or domain.ssl_mode is not SslMode.LETS_ENCRYPT:
			return None
		cert = await self.certificates.get_active(domain.id)
		if cert is None or not cert.certificate_pem or cert.expires_at is None:
			return None
		return cert

	# ------------------------------------------------------------------
	# Issuance
	# ------------------------------------------------------------------

	async def _check_issuance_allowed(self, domain: Domain, *, renewal: bool) -> None:
		if not domain.verified:
			raise PreconditionFailed("Domain must be verified before requesting a certificate")

		if not renewal:
			active = await self.certificates.get_active(domain.id)
			if active is not None:
				raise PreconditionFailed(
					f"Domain already has an active certificate ({active.id}); renew it instead"
				)

		if self.hostname_guard:
			private_ip = await find_private_address(domain.hostname)
			if private_ip is not None:
				raise PreconditionFailed(
					f"{domain.hostname} resolves to an internal address ({private_ip}); "
					"certificates can only be issued for public hostnames"
				)

		base = registered_domain(domain.hostname)
		issued_this_week = await self.certificates.count_created_since(base, utcnow() - _BUDGET_WINDOW)
		if issued_this_week >= self.max_issuances_per_week:
			raise RateLimited(
				f"Weekly certificate limit reached for {base} "
				f"({issued_this_week}/{self.max_issuances_per_week}). Try again later."
			)

	async def issue_certificate(
		self,
		domain_id: str,
		challenge_type: ChallengeType,
		*,
		renewed_from: str | None = None,
	) -> Certificate:
		"""Start a new issuance for ``domain_id``.

		Raises:
			DomainNotFound, PreconditionFailed, RateLimited: issuance not allowed
			ConflictError: another issuance is pending for the domain
			CAError: the CA refused the order (the reserved row is FAILED)
		"""
		domain = await self._require_domain(domain_id)
		await self._check_issuance_allowed(domain, renewal=renewed_from is not None)

		result = await self.certificates.create(domain.id, challenge_type, renewed_from=renewed_from)
		if isinstance(result, CreateConflict):
			raise ConflictError(result.existing_id)
		cert = result.certificate
		_log.info(
			"ISSUANCE_STARTED cert=%s domain=%s challenge=%s%s",
			cert.id,
			domain.hostname,
			challenge_type.value,
			f" renewed_from={renewed_from}" if renewed_from else "",
		)

		try:
			order = await self.issuer.request_order(domain.hostname, challenge_type)
		except CAError as exc:
			await self._fail(cert, domain, exc.message)
			raise
		except Exception as exc:
			message = f"ACME service unavailable: {exc}"
			await self._fail(cert, domain, message)
			raise CAError(message) from exc

		fields: dict[str, object] = {
			"order_id": order.order_id,
			"http_token": order.http_token,
			"http_key_authorization": order.http_key_authorization,
			"dns_txt_name": order.dns_txt_name,
			"dns_txt_value": order.dns_txt_value,
		}
		if challenge_type is ChallengeType.HTTP01:
			fields["polling_started_at"] = utcnow()

		stored = await self.certificates.update_status(
			cert.id,
			expected={challenge_type.pending_status},
			**fields,
		)
		if not stored:
			# Cancelled while the order was being opened
			_log.info("ISSUANCE_ABORTED cert=%s order=%s", cert.id, order.order_id)
			await self._abandon_quietly(order.order_id)
			return await self._require_certificate(cert.id)

		cert = await self._require_certificate(cert.id)
		if challenge_type is ChallengeType.HTTP01:
			self.poller.start(cert)
		return cert

	async def issue_or_resume(
		self,
		domain_id: str,
		challenge_type: ChallengeType,
	) -> tuple[Certificate, bool]:
		"""Issue, or observe the issuance already pending for the domain.

		Returns (certificate, resumed).
		"""
		try:
			return await self.issue_certificate(domain_id, challenge_type), False
		except ConflictError as exc:
			cert = await self._require_certificate(exc.existing_cert_id)

		# A pending row nobody will ever advance is failed and replaced
		reason = self._stale_reason(cert, utcnow())
		if reason is not None:
			domain = await self.domains.get(cert.domain_id)
			await self._fail(cert, domain, reason)
			return await self.issue_certificate(domain_id, challenge_type), False

		_log.info("ISSUANCE_RESUMED domain=%s cert=%s", domain_id, cert.id)
		self._resume(cert)
		return cert, True

	async def renew(self, cert_id: str) -> Certificate:
		"""Open a new issuance replacing an ISSUED certificate.

		The old row stays ISSUED (and active) until the new one is issued.
		"""
		cert = await self._require_certificate(cert_id)
		if cert.status is not CertificateStatus.ISSUED:
			raise InvalidTransition(f"Only issued certificates can be renewed (current: {cert.status.value})")
		return await self.issue_certificate(cert.domain_id, cert.challenge_type, renewed_from=cert.id)

	# ------------------------------------------------------------------
	# DNS-01
	# ------------------------------------------------------------------

	async def submit_dns_challenge(self, cert_id: str) -> str:
		"""Ask the CA to validate the DNS-01 TXT record. Returns ``"ok"``.

		Raises:
			NotYetPropagated: record not visible yet, retry later (row unchanged)
			IssuanceTimeout: retries exhausted or challenge expired (row FAILED)
			CAError: the CA rejected the validation (row FAILED)
			IssuerUnavailable: the ACME service was unreachable (row unchanged)
		"""
		cert = await self._require_certificate(cert_id)
		if cert.challenge_type is not ChallengeType.DNS01:
			raise InvalidTransition("DNS validation only applies to DNS-01 certificates")
		if cert.status is not CertificateStatus.PENDING_DNS01:
			raise InvalidTransition(f"Certificate is not in PENDING_DNS01 state (current: {cert.status.value})")
		if cert.order_id is None:
			raise InvalidTransition("Certificate order is still being created")

		if cert.dns_submitted_at is not None:
			self._resume(cert)
			return "ok"

		domain = await self._require_domain(cert.domain_id)
		age = utcnow() - ensure_utc(cert.created_at)
		if age > self.dns_challenge_ttl:
			message = "DNS challenge expired before the TXT record could be validated"
			await self._fail(cert, domain, message)
			raise IssuanceTimeout(message)

		try:
			result = await self.issuer.submit_dns_validation(cert.order_id)
		except CAError as exc:
			await self._fail(cert, domain, exc.message)
			raise
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			# Transport trouble says nothing about the TXT record; the row stays pending
			_log.warning("DNS_SUBMIT_UNAVAILABLE cert=%s domain=%s error=%s", cert.id, domain.hostname, exc)
			raise IssuerUnavailable(f"ACME service unavailable: {exc}") from exc

		if result.not_yet_propagated:
			attempts = await self.certificates.record_dns_attempt(cert.id)
			if attempts is None:
				current = await self._require_certificate(cert.id)
				raise InvalidTransition(f"Certificate is no longer pending (current: {current.status.value})")
			_log.info(
				"DNS_NOT_PROPAGATED cert=%s domain=%s attempt=%d/%d",
				cert.id,
				domain.hostname,
				attempts,
				self.dns_submit_max_attempts,
			)
			if attempts >= self.dns_submit_max_attempts:
				message = f"DNS TXT record was not found after {attempts} validation attempts"
				await self._fail(cert, domain, message)
				raise IssuanceTimeout(message)
			raise NotYetPropagated(attempts=attempts, max_attempts=self.dns_submit_max_attempts)

		if not result.ok:
			message = result.detail or "DNS validation was rejected"
			await self._fail(cert, domain, message)
			raise CAError(message)

		now = utcnow()
		submitted = await self.certificates.update_status(
			cert.id,
			expected={CertificateStatus.PENDING_DNS01},
			dns_submitted_at=now,
			polling_started_at=now,
		)
		if not submitted:
			current = await self._require_certificate(cert.id)
			raise InvalidTransition(f"Certificate is no longer pending (current: {current.status.value})")

		_log.info("DNS_SUBMITTED cert=%s domain=%s", cert.id, domain.hostname)
		self.poller.start(await self._require_certificate(cert.id))
		return "ok"

	# ------------------------------------------------------------------
	# Cancel / revoke
	# ------------------------------------------------------------------

	async def cancel_issuance(self, cert_id: str) -> Certificate:
		"""Abandon a pending issuance. A late CA completion is ignored."""
		cert = await self._require_certificate(cert_id)
		if not cert.is_pending:
			raise InvalidTransition(f"Cannot cancel a certificate in status {cert.status.value}")

		self.poller.stop(cert.id)
		if cert.order_id:
			await self._abandon_quietly(cert.order_id)

		cancelled = await self.certificates.update_status(
			cert.id,
			CertificateStatus.CANCELLED,
			expected=PENDING_STATUSES,
			last_error="Cancelled by user",
			**CHALLENGE_FIELDS_CLEARED,
		)
		current = await self._require_certificate(cert.id)
		if not cancelled:
			raise InvalidTransition(f"Certificate already resolved (current: {current.status.value})")

		domain = await self.domains.get(cert.domain_id)
		_log.info("ISSUANCE_CANCELLED cert=%s domain=%s", cert.id, domain.hostname if domain else cert.domain_id)
		await self._emit(EVENT_CANCELLED, current, domain)
		return current

	async def revoke(self, cert_id: str) -> Certificate:
		"""Revoke an ISSUED certificate at the CA, then mark it REVOKED.

		When no ISSUED certificate remains for the domain, HTTPS enforcement
		is switched off.
		"""
		cert = await self._require_certificate(cert_id)
		if cert.status is not CertificateStatus.ISSUED:
			raise InvalidTransition(f"Only issued certificates can be revoked (current: {cert.status.value})")

		if cert.order_id:
			try:
				await self.issuer.revoke(cert.order_id)
			except CAError:
				raise
			except Exception as exc:
				raise CAError(f"Failed to revoke certificate: {exc}") from exc

		revoked = await self.certificates.update_status(
			cert.id,
			CertificateStatus.REVOKED,
			expected={CertificateStatus.ISSUED},
		)
		current = await self._require_certificate(cert.id)
		if not revoked:
			raise InvalidTransition(f"Certificate is no longer issued (current: {current.status.value})")

		if await self.certificates.get_active(cert.domain_id) is None:
			await self.domains.set_force_https(cert.domain_id, False)

		domain = await self.domains.get(cert.domain_id)
		_log.info("CERT_REVOKED cert=%s domain=%s", cert.id, domain.hostname if domain else cert.domain_id)
		await self._emit(EVENT_REVOKED, current, domain)
		return current

	# ------------------------------------------------------------------
	# Sessions
	# ------------------------------------------------------------------

	def _resume(self, cert: Certificate) -> bool:
		if not cert.is_pollable:
			return False
		self.poller.start(cert)
		return True

	async def resume(self, cert_id: str) -> bool:
		"""Re-attach a poller from persisted state. False when nothing to poll."""
		cert = await self.certificates.get(cert_id)
		if cert is None:
			return False
		return self._resume(cert)

	def _stale_reason(self, cert: Certificate, now: datetime) -> str | None:
		"""Why a pending row can no longer make progress, or None.

		Rows without an order are given the poll timeout to get one; DNS-01
		rows expire with the challenge TTL whether or not they were submitted.
		"""
		if not cert.is_pending or self.poller.is_polling(cert.id):
			return None
		age = now - ensure_utc(cert.created_at)
		if cert.order_id is None and age > timedelta(seconds=self.poller.timeout):
			return "Issuance was interrupted before the order was created"
		if cert.challenge_type is ChallengeType.DNS01 and cert.dns_submitted_at is None and age > self.dns_challenge_ttl:
			return "DNS challenge expired before the TXT record could be validated"
		return None

	async def recover_pending(self) -> dict[str, int]:
		"""Resume every pending certificate this process can watch.

		Runs at startup and then periodically on the leader. Rows that can no
		longer progress (see ``_stale_reason``) are failed so they stop
		holding the domain's pending slot. Certificates already watched by
		this process are left alone.
		"""
		stats = {"resumed": 0, "failed": 0, "waiting": 0}
		now = utcnow()

		for cert in await self.certificates.list_non_terminal():
			if self.poller.is_polling(cert.id):
				continue
			if self._resume(cert):
				stats["resumed"] += 1
				continue

			message = self._stale_reason(cert, now)
			if message is None:
				stats["waiting"] += 1
				continue
			domain = await self.domains.get(cert.domain_id)
			if await self._fail(cert, domain, message):
				stats["failed"] += 1

		log = _log.info if stats["resumed"] or stats["failed"] else _log.debug
		log("RECOVERY resumed=%d failed=%d waiting=%d", stats["resumed"], stats["failed"], stats["waiting"])
		return stats

	async def shutdown(self) -> None:
		"""Stop local sessions. Persisted state is left for the next recovery scan."""
		await self.poller.stop_all()

	# ------------------------------------------------------------------
	# Terminal transitions
	# ------------------------------------------------------------------

	async def _fail(self, cert: Certificate, domain: Domain | None, message: str) -> bool:
		failed = await self.certificates.update_status(
			cert.id,
			CertificateStatus.FAILED,
			expected=PENDING_STATUSES,
			last_error=message,
			**CHALLENGE_FIELDS_CLEARED,
		)
		if not failed:
			return False
		self.poller.stop(cert.id)
		_log.warning(
			"ISSUANCE_FAILED cert=%s domain=%s error=%s",
			cert.id,
			domain.hostname if domain else cert.domain_id,
			message,
		)
		current = await self.certificates.get(cert.id)
		if current is not None:
			await self._emit(EVENT_FAILED, current, domain)
		return True

	async def _on_resolved(self, cert: Certificate) -> None:
		"""Poller callback, invoked once after a terminal write."""
		domain = await self.domains.get(cert.domain_id)
		if cert.status is CertificateStatus.ISSUED:
			# Issued certificates switch the domain to managed SSL
			await self.domains.set_ssl_mode(cert.domain_id, SslMode.LETS_ENCRYPT)
			_log.info(
				"ISSUANCE_COMPLETED cert=%s domain=%s expires=%s",
				cert.id,
				domain.hostname if domain else cert.domain_id,
				cert.expires_at.isoformat() if cert.expires_at else "-",
			)
			await self._emit(EVENT_RENEWED if cert.renewed_from else EVENT_ISSUED, cert, domain)
		elif cert.status is CertificateStatus.FAILED:
			_log.warning(
				"ISSUANCE_FAILED cert=%s domain=%s error=%s",
				cert.id,
				domain.hostname if domain else cert.domain_id,
				cert.last_error,
			)
			await self._emit(EVENT_FAILED, cert, domain)

	async def _emit(self, event: str, cert: Certificate, domain: Domain | None) -> None:
		await self.notifier.emit(
			IssuanceEvent(
				event=event,
				cert_id=cert.id,
				domain_id=cert.domain_id,
				hostname=domain.hostname if domain else "",
				status=cert.status,
				error=cert.last_error,
				expires_at=cert.expires_at,
			)
		)

	async def _abandon_quietly(self, order_id: str) -> None:
		try:
			await self.issuer.abandon(order_id)
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			_log.warning("ISSUER abandon order=%s failed: %s", order_id, exc)
