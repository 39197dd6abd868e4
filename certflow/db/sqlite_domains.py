#!/usr/bin/env python3
#
# certflow/db/sqlite_domains.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Custom domain CRUD operations."""

from __future__ import annotations

import secrets
import sqlite3
import uuid

from ..utils.time import utcnow
from .sqlite_runtime import transaction


def create_domain(
	conn: sqlite3.Connection,
	hostname: str,
	project_id: str,
	*,
	verified: bool = False,
) -> str:
	"""Register a custom hostname for a project. Returns the new domain id."""
	now = utcnow()
	domain_id = uuid.uuid4().hex
	with transaction(conn):
		conn.execute(
			"""
			INSERT INTO domains (
				id, hostname, project_id, verification_token, verified, verified_at,
				ssl_mode, force_https, created_at, updated_at
			)
			VALUES (?, ?, ?, ?, ?, ?, 'NONE', 0, ?, ?)
			""",
			(
				domain_id,
				hostname.strip().lower().rstrip("."),
				project_id,
				secrets.token_urlsafe(24),
				int(verified),
				now if verified else None,
				now,
				now,
			),
		)
	return domain_id


def get_domain(conn: sqlite3.Connection, domain_id: str) -> sqlite3.Row | None:
	"""Get a domain by id."""
	cur = conn.execute("SELECT * FROM domains WHERE id = ?", (domain_id,))
	return cur.fetchone()


def get_domain_by_hostname(conn: sqlite3.Connection, hostname: str) -> sqlite3.Row | None:
	"""Get a domain by hostname (case-insensitive)."""
	cur = conn.execute(
		"SELECT * FROM domains WHERE hostname = ?",
		(hostname.strip().lower().rstrip("."),),
	)
	return cur.fetchone()


def mark_domain_verified(conn: sqlite3.Connection, domain_id: str) -> bool:
	"""Flag a domain as verified after its DNS records were checked."""
	now = utcnow()
	with transaction(conn):
		cur = conn.execute(
			"UPDATE domains SET verified = 1, verified_at = ?, updated_at = ? WHERE id = ?",
			(now, now, domain_id),
		)
		return cur.rowcount > 0


def set_ssl_mode(
	conn: sqlite3.Connection,
	domain_id: str,
	ssl_mode: str,
	*,
	force_https: bool | None = None,
) -> bool:
	"""Persist the SSL mode, optionally overwriting the force-HTTPS flag."""
	now = utcnow()
	with transaction(conn):
		if force_https is None:
			cur = conn.execute(
				"UPDATE domains SET ssl_mode = ?, updated_at = ? WHERE id = ?",
				(ssl_mode, now, domain_id),
			)
		else:
			cur = conn.execute(
				"UPDATE domains SET ssl_mode = ?, force_https = ?, updated_at = ? WHERE id = ?",
				(ssl_mode, int(force_https), now, domain_id),
			)
		return cur.rowcount > 0


def set_force_https(conn: sqlite3.Connection, domain_id: str, enabled: bool) -> bool:
	"""Persist the force-HTTPS flag."""
	now = utcnow()
	with transaction(conn):
		cur = conn.execute(
			"UPDATE domains SET force_https = ?, updated_at = ? WHERE id = ?",
			(int(enabled), now, domain_id),
		)
		return cur.rowcount > 0


def list_domains(conn: sqlite3.Connection, project_id: str | None = None) -> list[sqlite3.Row]:
	"""List domains, optionally filtered by project."""
	if project_id is None:
		cur = conn.execute("SELECT * FROM domains ORDER BY hostname")
	else:
		cur = conn.execute(
			"SELECT * FROM domains WHERE project_id = ? ORDER BY hostname",
			(project_id,),
		)
	return cur.fetchall()


def delete_domain(conn: sqlite3.Connection, domain_id: str) -> bool:
	"""Delete a domain and, through the foreign key, its certificate history."""
	with transaction(conn):
		cur = conn.execute("DELETE FROM domains WHERE id = ?", (domain_id,))
		return cur.rowcount > 0
