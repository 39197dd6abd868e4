#!/usr/bin/env python3
#
# certflow/ssl/poller.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Verification poller: one asyncio task per pending certificate.

A session is rebuilt from the persisted row alone, so the same code path
serves fresh issuances, DNS-01 submissions and the startup recovery scan.
The wall-clock window starts at ``polling_started_at``; a resumed session
keeps the window of the session it replaces.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from cryptography import x509

from ..db.store import CertificateStore
from .issuer import ChallengeIssuer
from .types import PENDING_STATUSES, Certificate, CertificateStatus, OrderStatus, StatusResult
from ..utils.time import ensure_utc, utcnow

_log = logging.getLogger(__name__)

__all__ = ["IssuanceSession", "VerificationPoller", "TIMEOUT_ERROR"]

TIMEOUT_ERROR = "issuance timed out"

# Cleared once the certificate leaves the pending states
CHALLENGE_FIELDS_CLEARED = {
	"http_token": None,
	"http_key_authorization": None,
	"dns_txt_name": None,
	"dns_txt_value": None,
}

ResolvedCallback = Callable[[Certificate], Awaitable[None]]


@dataclass
class IssuanceSession:
	"""Process-local watcher of one pending certificate."""
	cert_id: str
	interval: float
	deadline: datetime
	cancelled: asyncio.Event = field(default_factory=asyncio.Event)
	task: Optional[asyncio.Task] = None
	notified: bool = False
	ticks: int = 0

	@property
	def active(self) -> bool:
		return self.task is not None and not self.task.done()


def expiry_from_pem(pem: str | None) -> datetime | None:
	"""``notAfter`` of the leaf certificate in ``pem``."""
	if not pem:
		return None
	try:
		cert = x509.load_pem_x509_certificate(pem.encode("ascii"))
	except ValueError as exc:
		_log.warning("POLLER unreadable certificate PEM: %s", exc)
		return None
	return cert.not_valid_after_utc


class VerificationPoller:
	"""Owns the polling sessions of this process, keyed by certificate id."""

	def __init__(
		self,
		store: CertificateStore,
		issuer: ChallengeIssuer,
		*,
		interval: float = 3.0,
		timeout: float = 600.0,
		on_resolved: ResolvedCallback | None = None,
	) -> None:
		if interval <= 0:
			raise ValueError(f"interval must be > 0, got {interval}")
		if timeout < interval:
			raise ValueError(f"timeout ({timeout}) must not be shorter than interval ({interval})")
		self.store = store
		self.issuer = issuer
		self.interval = interval
		self.timeout = timeout
		self._on_resolved = on_resolved
		self._sessions: dict[str, IssuanceSession] = {}

	def start(self, cert: Certificate) -> IssuanceSession:
		"""Attach a session to ``cert``; returns the running one if already attached."""
		existing = self._sessions.get(cert.id)
		if existing is not None and existing.active and not existing.cancelled.is_set():
			return existing

		started = ensure_utc(cert.polling_started_at) or utcnow()
		session = IssuanceSession(
			cert_id=cert.id,
			interval=self.interval,
			deadline=started + timedelta(seconds=self.timeout),
		)
		self._sessions[cert.id] = session
		session.task = asyncio.create_task(self._run(session), name=f"poll-{cert.id}")
		_log.info(
			"POLLER cert=%s started deadline=%s interval=%.1fs",
			cert.id,
			session.deadline.isoformat(),
			self.interval,
		)
		return session

	def get(self, cert_id: str) -> IssuanceSession | None:
		return self._sessions.get(cert_id)

	def is_polling(self, cert_id: str) -> bool:
		session = self._sessions.get(cert_id)
		return session is not None and session.active and not session.cancelled.is_set()

	def stop(self, cert_id: str) -> bool:
		"""Signal the session to stop. Does not wait for an in-flight query."""
		session = self._sessions.get(cert_id)
		if session is None:
			return False
		session.cancelled.set()
		_log.info("POLLER cert=%s stop requested", cert_id)
		return True

	async def stop_all(self, timeout: float = 5.0) -> None:
		"""Stop every session, cancelling tasks that do not exit within ``timeout``."""
		sessions = list(self._sessions.values())
		for session in sessions:
			session.cancelled.set()
		pending = [s.task for s in sessions if s.task is not None and not s.task.done()]
		if pending:
			_done, not_done = await asyncio.wait(pending, timeout=timeout)
			if not_done:
				_log.warning("POLLER %d sessions did not stop gracefully, forcing cancel", len(not_done))
				for task in not_done:
					task.cancel()
				await asyncio.gather(*not_done, return_exceptions=True)
		self._sessions.clear()

	async def _run(self, session: IssuanceSession) -> None:
		try:
			while not session.cancelled.is_set():
				try:
					if utcnow() >= session.deadline:
						await self._resolve(
							session,
							CertificateStatus.FAILED,
							last_error=TIMEOUT_ERROR,
							**CHALLENGE_FIELDS_CLEARED,
						)
						return
					if await self._tick(session):
						return
				except asyncio.CancelledError:
					raise
				except Exception as exc:
					# Store errors (e.g. "database is locked") are retried like query errors
					_log.warning("POLLER cert=%s tick %d failed, retrying: %s", session.cert_id, session.ticks, exc)

				remaining = (session.deadline - utcnow()).total_seconds()
				await self._wait(session, min(session.interval, max(remaining, 0.0)))
		except asyncio.CancelledError:
			_log.debug("POLLER cert=%s task cancelled", session.cert_id)
			raise
		except Exception:
			_log.exception("POLLER cert=%s fatal error in poll loop", session.cert_id)
		finally:
			if self._sessions.get(session.cert_id) is session:
				del self._sessions[session.cert_id]

	async def _tick(self, session: IssuanceSession) -> bool:
		"""One poll. Returns True when the session is finished."""
		session.ticks += 1
		cert = await self.store.get(session.cert_id)
		if cert is None or not cert.is_pending:
			_log.info("POLLER cert=%s no longer pending, stopping", session.cert_id)
			return True
		if cert.order_id is None:
			return False
		if session.cancelled.is_set():
			return True

		try:
			result = await self.issuer.query_status(cert.order_id)
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			_log.warning("POLLER cert=%s status query failed (tick %d): %s", cert.id, session.ticks, exc)
			return False

		# Result observed after cancellation is discarded
		if session.cancelled.is_set():
			return True

		if result.status is OrderStatus.ISSUED:
			await self._resolve_issued(session, cert, result)
			return True
		if result.status is OrderStatus.FAILED:
			await self._resolve(
				session,
				CertificateStatus.FAILED,
				last_error=result.error or "Certificate order failed",
				**CHALLENGE_FIELDS_CLEARED,
			)
			return True
		_log.debug("POLLER cert=%s still pending (tick %d)", cert.id, session.ticks)
		return False

	async def _resolve_issued(self, session: IssuanceSession, cert: Certificate, result: StatusResult) -> None:
		expires_at = ensure_utc(result.expires_at) or expiry_from_pem(result.certificate_pem)
		if expires_at is None:
			_log.warning("POLLER cert=%s issued without an expiry date", cert.id)
		await self._resolve(
			session,
			CertificateStatus.ISSUED,
			issued_at=utcnow(),
			expires_at=expires_at,
			certificate_pem=result.certificate_pem,
			last_error=None,
			**CHALLENGE_FIELDS_CLEARED,
		)

	async def _resolve(self, session: IssuanceSession, status: CertificateStatus, **fields: object) -> None:
		"""Persist the terminal state, then notify once."""
		written = await self.store.update_status(
			session.cert_id,
			status,
			expected=PENDING_STATUSES,
			**fields,
		)
		if not written:
			_log.info("POLLER cert=%s resolved elsewhere, discarding %s", session.cert_id, status.value)
			return
		_log.info("POLLER cert=%s -> %s", session.cert_id, status.value)
		if session.notified or self._on_resolved is None:
			return
		session.notified = True
		cert = await self.store.get(session.cert_id)
		if cert is not None:
			await self._on_resolved(cert)

	async def _wait(self, session: IssuanceSession, delay: float) -> None:
		try:
			await asyncio.wait_for(session.cancelled.wait(), timeout=delay)
		except asyncio.TimeoutError:
			pass
