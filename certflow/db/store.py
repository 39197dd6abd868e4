#!/usr/bin/env python3
#
# certflow/db/store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Async stores over the SQLite helpers.

Each call opens a short-lived connection in a worker thread so the event
loop never blocks on disk I/O. The database is the single source of truth:
nothing here caches rows.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Optional, TypeVar

from ..ssl.types import (
	Certificate,
	CertificateStatus,
	ChallengeType,
	CreateConflict,
	Created,
	CreateResult,
	Domain,
	SslMode,
)
from ..ssl.hostname_guard import normalize_hostname
from . import sqlite_certificates as certs_db
from . import sqlite_domains as domains_db
from .sqlite_runtime import open_connection

_log = logging.getLogger(__name__)

T = TypeVar("T")


class _SqliteStore:
	def __init__(self, db_path: Path) -> None:
		self.db_path = db_path

	def _run_sync(self, func: Callable[..., T], *args, **kwargs) -> T:
		with open_connection(self.db_path) as conn:
			return func(conn, *args, **kwargs)

	async def _run(self, func: Callable[..., T], *args, **kwargs) -> T:
		return await asyncio.to_thread(self._run_sync, func, *args, **kwargs)


class CertificateStore(_SqliteStore):
	"""Certificate records with the one-pending-per-domain invariant."""

	async def create(
		self,
		domain_id: str,
		challenge_type: ChallengeType,
		*,
		renewed_from: str | None = None,
	) -> CreateResult:
		"""Reserve a pending certificate row for ``domain_id``.

		Losing the race against another writer is not an error: the result is
		a ``CreateConflict`` carrying the winner's id.
		"""
		cert_id = uuid.uuid4().hex
		existing_id = await self._run(
			certs_db.insert_pending_certificate,
			cert_id,
			domain_id,
			challenge_type.value,
			challenge_type.pending_status.value,
			renewed_from=renewed_from,
		)
		if existing_id is not None:
			_log.info("STORE_CONFLICT domain=%s pending=%s", domain_id, existing_id)
			return CreateConflict(existing_id=existing_id)
		certificate = await self.get(cert_id)
		if certificate is None:
			raise RuntimeError(f"Certificate {cert_id} vanished right after insert")
		return Created(certificate=certificate)

	async def get(self, cert_id: str) -> Optional[Certificate]:
		row = await self._run(certs_db.get_certificate, cert_id)
		return Certificate.from_row(row) if row else None

	async def get_by_http_token(self, token: str) -> Optional[Certificate]:
		row = await self._run(certs_db.get_pending_by_http_token, token)
		return Certificate.from_row(row) if row else None

	async def update_status(
		self,
		cert_id: str,
		status: CertificateStatus | None = None,
		*,
		expected: Iterable[CertificateStatus],
		**fields: object,
	) -> bool:
		"""Compare-and-set write; False when the row is no longer in ``expected``."""
		if status is not None:
			fields["status"] = status.value
		return await self._run(
			certs_db.update_certificate,
			cert_id,
			expected_statuses=[s.value for s in expected],
			**fields,
		)

	async def record_dns_attempt(self, cert_id: str) -> int | None:
		return await self._run(certs_db.increment_dns_submit_attempts, cert_id)

	async def set_last_error(self, cert_id: str, message: str, *, count_renewal_attempt: bool = False) -> bool:
		return await self._run(
			certs_db.record_error,
			cert_id,
			message,
			count_renewal_attempt=count_renewal_attempt,
		)

	async def list_by_domain(self, domain_id: str) -> list[Certificate]:
		rows = await self._run(certs_db.list_certificates_by_domain, domain_id)
		return [Certificate.from_row(row) for row in rows]

	async def list_non_terminal(self) -> list[Certificate]:
		rows = await self._run(certs_db.list_non_terminal_certificates)
		return [Certificate.from_row(row) for row in rows]

	async def get_pending(self, domain_id: str) -> Optional[Certificate]:
		row = await self._run(certs_db.get_pending_certificate, domain_id)
		return Certificate.from_row(row) if row else None

	async def get_active(self, domain_id: str) -> Optional[Certificate]:
		row = await self._run(certs_db.get_active_certificate, domain_id)
		return Certificate.from_row(row) if row else None

	async def list_expiring(self, before: datetime, limit: int) -> list[tuple[Certificate, str, bool]]:
		"""(certificate, hostname, has_pending) for active certificates expiring before ``before``."""
		rows = await self._run(certs_db.list_expiring_certificates, before, limit)
		return [(Certificate.from_row(row), row["hostname"], bool(row["has_pending"])) for row in rows]

	async def count_created_since(self, registered_domain: str, since: datetime) -> int:
		return await self._run(certs_db.count_created_since, registered_domain, since)

	async def count_by_status(self) -> dict[str, int]:
		return await self._run(certs_db.count_by_status)

	async def count_expiring(self, before: datetime) -> int:
		return await self._run(certs_db.count_expiring, before)


class DomainStore(_SqliteStore):
	"""Read/write access to custom domain rows."""

	async def get(self, domain_id: str) -> Optional[Domain]:
		row = await self._run(domains_db.get_domain, domain_id)
		return Domain.from_row(row) if row else None

	async def get_by_hostname(self, hostname: str) -> Optional[Domain]:
		row = await self._run(domains_db.get_domain_by_hostname, hostname)
		return Domain.from_row(row) if row else None

	async def create(self, hostname: str, project_id: str, *, verified: bool = False) -> Domain:
		"""Register ``hostname`` (IDNA-normalized). Raises ValueError for invalid hostnames."""
		hostname = normalize_hostname(hostname)
		domain_id = await self._run(domains_db.create_domain, hostname, project_id, verified=verified)
		domain = await self.get(domain_id)
		if domain is None:
			raise RuntimeError(f"Domain {domain_id} vanished right after insert")
		return domain

	async def list_all(self, project_id: str | None = None) -> list[Domain]:
		rows = await self._run(domains_db.list_domains, project_id)
		return [Domain.from_row(row) for row in rows]

	async def mark_verified(self, domain_id: str) -> bool:
		return await self._run(domains_db.mark_domain_verified, domain_id)

	async def set_ssl_mode(self, domain_id: str, mode: SslMode, *, force_https: bool | None = None) -> bool:
		return await self._run(domains_db.set_ssl_mode, domain_id, mode.value, force_https=force_https)

	async def set_force_https(self, domain_id: str, enabled: bool) -> bool:
		return await self._run(domains_db.set_force_https, domain_id, enabled)

	async def delete(self, domain_id: str) -> bool:
		return await self._run(domains_db.delete_domain, domain_id)
