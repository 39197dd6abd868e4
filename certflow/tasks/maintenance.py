#!/usr/bin/env python3
#
# certflow/tasks/maintenance.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic SQLite upkeep run by the leader's scheduler."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

_log = logging.getLogger(__name__)

__all__ = [
	"sqlite_maintenance",
	"sqlite_integrity_check",
]


async def sqlite_maintenance(db_path: Path) -> bool:
	"""WAL checkpoint, ANALYZE and ``PRAGMA optimize``.

	Every status change and DNS attempt is a small write, so the WAL grows
	while issuances are in flight. VACUUM is left to operators. Returns
	False when the database does not exist yet.
	"""
	if not Path(db_path).exists():
		_log.warning("MAINTENANCE SQLite database not found at %s", db_path)
		return False

	try:
		async with aiosqlite.connect(db_path) as db:
			await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
			await db.execute("ANALYZE")
			await db.execute("PRAGMA optimize")
	except Exception:
		_log.exception("MAINTENANCE SQLite maintenance failed")
		raise
	_log.info("MAINTENANCE SQLite maintenance completed")
	return True


async def sqlite_integrity_check(db_path: Path) -> bool:
	"""``PRAGMA integrity_check``; a failure is logged as CRITICAL."""
	if not Path(db_path).exists():
		_log.warning("MAINTENANCE SQLite database not found at %s", db_path)
		return False

	try:
		async with aiosqlite.connect(db_path) as db:
			cursor = await db.execute("PRAGMA integrity_check")
			result = await cursor.fetchone()
	except Exception:
		_log.exception("MAINTENANCE SQLite integrity check error")
		raise

	if result and result[0] == "ok":
		_log.info("MAINTENANCE SQLite integrity check passed")
		return True
	_log.critical("MAINTENANCE SQLite integrity check FAILED: %s", result[0] if result else "unknown error")
	return False
