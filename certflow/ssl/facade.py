#!/usr/bin/env python3
#
# certflow/ssl/facade.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Domain SSL settings: mode selection and HTTPS enforcement."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .errors import DomainNotFound, PreconditionFailed
from .orchestrator import LifecycleOrchestrator
from .types import Certificate, Domain, SslMode

_log = logging.getLogger(__name__)

__all__ = ["DomainSettingsFacade"]


class DomainSettingsFacade:
	"""SSL settings of a custom domain, on top of the orchestrator.

	Changing the mode never revokes certificates; a certificate issued earlier
	is picked up again when the domain switches back to Let's Encrypt.
	"""

	def __init__(self, orchestrator: LifecycleOrchestrator) -> None:
		self.orchestrator = orchestrator
		self.domains = orchestrator.domains
		self.certificates = orchestrator.certificates

	async def _require_domain(self, domain_id: str) -> Domain:
		domain = await self.domains.get(domain_id)
		if domain is None:
			raise DomainNotFound(domain_id)
		return domain

	async def set_ssl_mode(self, domain_id: str, mode: SslMode) -> Optional[Certificate]:
		"""Persist the SSL mode.

		Returns the still-issued certificate when switching to Let's Encrypt
		(None means a new issuance is needed, and for other modes).
		"""
		domain = await self._require_domain(domain_id)

		if mode is SslMode.LETS_ENCRYPT:
			await self.domains.set_ssl_mode(domain.id, mode)
			active = await self.certificates.get_active(domain.id)
			_log.info(
				"SSL_MODE domain=%s mode=%s active_cert=%s",
				domain.hostname,
				mode.value,
				active.id if active else "-",
			)
			return active

		# HTTPS enforcement only makes sense with a managed certificate
		await self.domains.set_ssl_mode(domain.id, mode, force_https=False)
		_log.info("SSL_MODE domain=%s mode=%s force_https=off", domain.hostname, mode.value)
		return None

	async def toggle_force_https(self, domain_id: str, enabled: bool) -> bool:
		"""Enable or disable HTTPS enforcement. Returns the new flag."""
		domain = await self._require_domain(domain_id)
		if enabled:
			active = await self.certificates.get_active(domain.id)
			if active is None:
				raise PreconditionFailed("An issued certificate is required before HTTPS can be enforced")
		await self.domains.set_force_https(domain.id, enabled)
		_log.info("FORCE_HTTPS domain=%s enabled=%s", domain.hostname, enabled)
		return enabled

	async def get_ssl_summary(self, domain_id: str) -> dict[str, Any]:
		"""Mode, enforcement flag, active and pending certificate of a domain."""
		domain = await self._require_domain(domain_id)
		return {
			"domain": domain,
			"active": await self.certificates.get_active(domain.id),
			"pending": await self.certificates.get_pending(domain.id),
		}
