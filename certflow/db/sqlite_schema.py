#!/usr/bin/env python3
#
# certflow/db/sqlite_schema.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite schema initialization."""

from __future__ import annotations

import logging
import sqlite3

from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)

# Keep in sync with CertificateStatus.is_pending
PENDING_STATUS_SQL = "('PENDING_HTTP01', 'PENDING_DNS01')"


def init_schema(conn: sqlite3.Connection) -> None:
	"""Create the schema. Idempotent, safe to run from every worker."""
	with transaction(conn, immediate=True):
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS domains (
				id TEXT PRIMARY KEY,
				hostname TEXT NOT NULL UNIQUE,
				project_id TEXT NOT NULL,
				verification_token TEXT NOT NULL,
				verified INTEGER NOT NULL DEFAULT 0,
				verified_at timestamp,
				ssl_mode TEXT NOT NULL DEFAULT 'NONE'
					CHECK (ssl_mode IN ('NONE', 'LETS_ENCRYPT', 'EXTERNAL')),
				force_https INTEGER NOT NULL DEFAULT 0,
				created_at timestamp NOT NULL,
				updated_at timestamp NOT NULL
			)
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_domains_project_id ON domains(project_id)")

		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS certificates (
				id TEXT PRIMARY KEY,
				domain_id TEXT NOT NULL,
				challenge_type TEXT NOT NULL CHECK (challenge_type IN ('HTTP01', 'DNS01')),
				status TEXT NOT NULL CHECK (status IN (
					'PENDING_HTTP01', 'PENDING_DNS01', 'ISSUED', 'FAILED', 'REVOKED', 'CANCELLED'
				)),
				order_id TEXT,
				http_token TEXT,
				http_key_authorization TEXT,
				dns_txt_name TEXT,
				dns_txt_value TEXT,
				dns_submit_attempts INTEGER NOT NULL DEFAULT 0,
				dns_submitted_at timestamp,
				polling_started_at timestamp,
				issued_at timestamp,
				expires_at timestamp,
				last_error TEXT,
				renewal_attempts INTEGER NOT NULL DEFAULT 0,
				renewed_from TEXT,
				certificate_pem TEXT,
				created_at timestamp NOT NULL,
				updated_at timestamp NOT NULL,
				FOREIGN KEY(domain_id) REFERENCES domains(id) ON DELETE CASCADE
			)
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_certificates_domain_id ON certificates(domain_id)")
		conn.execute("CREATE INDEX IF NOT EXISTS idx_certificates_status ON certificates(status)")
		conn.execute("CREATE INDEX IF NOT EXISTS idx_certificates_http_token ON certificates(http_token)")
		# At most one in-flight issuance per domain, across all processes.
		conn.execute(
			f"""
			CREATE UNIQUE INDEX IF NOT EXISTS idx_certificates_one_pending_per_domain
			ON certificates(domain_id)
			WHERE status IN {PENDING_STATUS_SQL}
			"""
		)

		# Single-row leader lock (id is always 1)
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS app_lock (
				id INTEGER PRIMARY KEY CHECK (id = 1),
				pid INTEGER NOT NULL,
				acquired_at timestamp NOT NULL
			)
			"""
		)
	_log.debug("SQLite schema ready")
