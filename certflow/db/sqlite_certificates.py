#!/usr/bin/env python3
#
# certflow/db/sqlite_certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate record persistence.

Every status write is a compare-and-set on the current status, so a late
answer from the CA can never overwrite a row that was cancelled or already
resolved by another process.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime

from ..utils.time import utcnow
from .sqlite_runtime import transaction
from .sqlite_schema import PENDING_STATUS_SQL


_UPDATABLE_COLUMNS = frozenset({
	"status",
	"order_id",
	"http_token",
	"http_key_authorization",
	"dns_txt_name",
	"dns_txt_value",
	"dns_submitted_at",
	"polling_started_at",
	"issued_at",
	"expires_at",
	"last_error",
	"certificate_pem",
})


def insert_pending_certificate(
	conn: sqlite3.Connection,
	cert_id: str,
	domain_id: str,
	challenge_type: str,
	status: str,
	*,
	renewed_from: str | None = None,
) -> str | None:
	"""Reserve the pending slot of a domain.

	Returns None when the row was inserted, or the id of the pending
	certificate that already holds the slot.
	"""
	now = utcnow()
	with transaction(conn, immediate=True):
		try:
			conn.execute(
				"""
				INSERT INTO certificates (
					id, domain_id, challenge_type, status, renewed_from, created_at, updated_at
				)
				VALUES (?, ?, ?, ?, ?, ?, ?)
				""",
				(cert_id, domain_id, challenge_type, status, renewed_from, now, now),
			)
		except sqlite3.IntegrityError:
			row = conn.execute(
				f"SELECT id FROM certificates WHERE domain_id = ? AND status IN {PENDING_STATUS_SQL}",
				(domain_id,),
			).fetchone()
			if row is None:
				# Not the pending-slot index (e.g. unknown domain_id)
				raise
			return row["id"]
	return None


def get_certificate(conn: sqlite3.Connection, cert_id: str) -> sqlite3.Row | None:
	"""Get a certificate by id."""
	cur = conn.execute("SELECT * FROM certificates WHERE id = ?", (cert_id,))
	return cur.fetchone()


def get_pending_by_http_token(conn: sqlite3.Connection, token: str) -> sqlite3.Row | None:
	"""Find the pending HTTP-01 certificate that owns a challenge token."""
	cur = conn.execute(
		"SELECT * FROM certificates WHERE http_token = ? AND status = 'PENDING_HTTP01'",
		(token,),
	)
	return cur.fetchone()


def update_certificate(
	conn: sqlite3.Connection,
	cert_id: str,
	*,
	expected_statuses: Iterable[str],
	**fields: object,
) -> bool:
	"""Update columns only while the row is in one of ``expected_statuses``.

	Returns False when the row is missing or its status moved on.
	"""
	unknown = set(fields) - _UPDATABLE_COLUMNS
	if unknown:
		raise ValueError(f"Unknown certificate columns: {sorted(unknown)}")
	expected = list(expected_statuses)
	if not expected:
		raise ValueError("expected_statuses must not be empty")

	fields["updated_at"] = utcnow()
	assignments = ", ".join(f"{column} = ?" for column in fields)
	placeholders = ", ".join("?" for _ in expected)
	with transaction(conn, immediate=True):
		cur = conn.execute(
			f"UPDATE certificates SET {assignments} WHERE id = ? AND status IN ({placeholders})",
			(*fields.values(), cert_id, *expected),
		)
		return cur.rowcount > 0


def increment_dns_submit_attempts(conn: sqlite3.Connection, cert_id: str) -> int | None:
	"""Count a NotYetPropagated answer. Returns the new count, None if no longer pending."""
	now = utcnow()
	with transaction(conn, immediate=True):
		cur = conn.execute(
			"""
			UPDATE certificates
			SET dns_submit_attempts = dns_submit_attempts + 1, updated_at = ?
			WHERE id = ? AND status = 'PENDING_DNS01'
			""",
			(now, cert_id),
		)
		if cur.rowcount == 0:
			return None
		row = conn.execute(
			"SELECT dns_submit_attempts FROM certificates WHERE id = ?",
			(cert_id,),
		).fetchone()
		return int(row["dns_submit_attempts"])


def record_error(
	conn: sqlite3.Connection,
	cert_id: str,
	message: str,
	*,
	count_renewal_attempt: bool = False,
) -> bool:
	"""Store a diagnostic message without changing the status."""
	now = utcnow()
	with transaction(conn):
		cur = conn.execute(
			"""
			UPDATE certificates
			SET last_error = ?, renewal_attempts = renewal_attempts + ?, updated_at = ?
			WHERE id = ?
			""",
			(message, 1 if count_renewal_attempt else 0, now, cert_id),
		)
		return cur.rowcount > 0


def list_certificates_by_domain(conn: sqlite3.Connection, domain_id: str) -> list[sqlite3.Row]:
	"""All certificates of a domain, newest first."""
	cur = conn.execute(
		"SELECT * FROM certificates WHERE domain_id = ? ORDER BY created_at DESC, id",
		(domain_id,),
	)
	return cur.fetchall()


def list_non_terminal_certificates(conn: sqlite3.Connection) -> list[sqlite3.Row]:
	"""All pending certificates, oldest first (recovery scan order)."""
	cur = conn.execute(
		f"SELECT * FROM certificates WHERE status IN {PENDING_STATUS_SQL} ORDER BY created_at",
	)
	return cur.fetchall()


def get_pending_certificate(conn: sqlite3.Connection, domain_id: str) -> sqlite3.Row | None:
	"""The pending certificate of a domain, if any (there is at most one)."""
	cur = conn.execute(
		f"SELECT * FROM certificates WHERE domain_id = ? AND status IN {PENDING_STATUS_SQL}",
		(domain_id,),
	)
	return cur.fetchone()


def get_active_certificate(conn: sqlite3.Connection, domain_id: str) -> sqlite3.Row | None:
	"""Most recently issued certificate that is still ISSUED."""
	cur = conn.execute(
		"""
		SELECT * FROM certificates
		WHERE domain_id = ? AND status = 'ISSUED'
		ORDER BY issued_at DESC, created_at DESC
		LIMIT 1
		""",
		(domain_id,),
	)
	return cur.fetchone()


def list_expiring_certificates(
	conn: sqlite3.Connection,
	before: datetime,
	limit: int,
) -> list[sqlite3.Row]:
	"""Active certificates expiring before ``before``, soonest first.

	Each row carries ``hostname`` and ``has_pending`` (1 when a renewal or
	other issuance is already in flight for the domain).
	"""
	cur = conn.execute(
		f"""
		SELECT c.*, d.hostname AS hostname,
			EXISTS (
				SELECT 1 FROM certificates p
				WHERE p.domain_id = c.domain_id AND p.status IN {PENDING_STATUS_SQL}
			) AS has_pending
		FROM certificates c
		JOIN domains d ON d.id = c.domain_id
		WHERE c.status = 'ISSUED'
			AND c.expires_at IS NOT NULL
			AND c.expires_at <= ?
			AND NOT EXISTS (
				SELECT 1 FROM certificates newer
				WHERE newer.domain_id = c.domain_id
					AND newer.status = 'ISSUED'
					AND newer.issued_at > c.issued_at
			)
		ORDER BY c.expires_at ASC
		LIMIT ?
		""",
		(before, limit),
	)
	return cur.fetchall()


def count_created_since(conn: sqlite3.Connection, registered_domain: str, since: datetime) -> int:
	"""Count certificates created since ``since`` for a registered domain and its subdomains."""
	cur = conn.execute(
		"""
		SELECT COUNT(*) FROM certificates c
		JOIN domains d ON d.id = c.domain_id
		WHERE (d.hostname = ? OR d.hostname LIKE ?) AND c.created_at >= ?
		""",
		(registered_domain, f"%.{registered_domain}", since),
	)
	return int(cur.fetchone()[0])


def count_by_status(conn: sqlite3.Connection) -> dict[str, int]:
	"""Certificate counts keyed by status."""
	cur = conn.execute("SELECT status, COUNT(*) AS cnt FROM certificates GROUP BY status")
	return {row["status"]: int(row["cnt"]) for row in cur.fetchall()}


def count_expiring(conn: sqlite3.Connection, before: datetime) -> int:
	"""Count ISSUED certificates expiring before ``before``."""
	cur = conn.execute(
		"SELECT COUNT(*) FROM certificates WHERE status = 'ISSUED' AND expires_at <= ?",
		(before,),
	)
	return int(cur.fetchone()[0])
