#!/usr/bin/env python3
#
# certflow/db/sqlite_leader.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Leader election between server processes.

Only the leader runs the startup recovery scan and the renewal scheduler.
Issuance sessions started by requests run in whichever process received them.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import timedelta

from ..utils.time import utcnow

_log = logging.getLogger(__name__)

_STALE_AFTER = timedelta(seconds=60)


def _owner_is_dead(owner_pid: int) -> bool:
	try:
		os.kill(owner_pid, 0)
	except ProcessLookupError:
		return True
	except OSError:
		# Different UID/namespace: assume alive, wait for the lock to go stale.
		return False
	return False


def try_acquire_leader_lock(conn: sqlite3.Connection, *, stale_after: timedelta = _STALE_AFTER) -> bool:
	"""Take (or refresh) the leader lock for this process.

	The lock is stolen when it is older than ``stale_after`` or when the
	owning PID no longer exists. Calling it again from the leader refreshes
	``acquired_at``, so it doubles as a heartbeat.
	"""
	pid = os.getpid()
	now = utcnow()
	started_tx = False
	try:
		if not conn.in_transaction:
			conn.execute("BEGIN IMMEDIATE")
			started_tx = True

		row = conn.execute("SELECT pid FROM app_lock WHERE id = 1").fetchone()
		force_takeover = 0
		if row is not None and row["pid"] != pid and _owner_is_dead(int(row["pid"])):
			force_takeover = 1

		conn.execute(
			"""
			INSERT INTO app_lock (id, pid, acquired_at)
			VALUES (1, ?, ?)
			ON CONFLICT(id) DO UPDATE SET pid = excluded.pid, acquired_at = excluded.acquired_at
			WHERE pid = ? OR acquired_at < ? OR ? = 1
			""",
			(pid, now, pid, now - stale_after, force_takeover),
		)
		row = conn.execute("SELECT pid FROM app_lock WHERE id = 1").fetchone()
		acquired = row is not None and row["pid"] == pid
		if started_tx:
			conn.commit()
		return acquired
	except sqlite3.Error as e:
		if started_tx and conn.in_transaction:
			conn.rollback()
		_log.warning("Failed to acquire leader lock: %s", e)
		return False


def release_leader_lock(conn: sqlite3.Connection) -> bool:
	"""Release the leader lock if held by this process."""
	try:
		conn.execute("DELETE FROM app_lock WHERE id = 1 AND pid = ?", (os.getpid(),))
		conn.commit()
		return True
	except sqlite3.Error as e:
		_log.warning("Failed to release leader lock: %s", e)
		return False
