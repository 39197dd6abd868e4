#!/usr/bin/env python3
#
# certflow/db/sqlite_runtime.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Connections to the certificate database.

Every store call opens a short-lived connection from a worker thread, so
connections are cheap, tracked for shutdown, and always in WAL mode.
Timestamps are stored as fixed-width UTC ISO strings (``...Z``) which keeps
``ORDER BY`` and ``<`` comparisons on them chronological.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

_log = logging.getLogger(__name__)

_BUSY_TIMEOUT = 30.0
_JOURNAL_ATTEMPTS = 5
_CHECKPOINT_MODES = ("PASSIVE", "FULL", "RESTART", "TRUNCATE")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_tracked: set[sqlite3.Connection] = set()
_tracked_lock = threading.Lock()


def _timestamp_to_db(value: datetime) -> str:
	if value.tzinfo is None:
		raise ValueError("Naive datetime not allowed in SQLite")
	text = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
	return text.replace("+00:00", "Z")


def _timestamp_from_db(raw: bytes) -> datetime:
	text = raw.decode("utf-8", errors="replace")
	try:
		parsed = datetime.fromisoformat(text.removesuffix("Z") + "+00:00" if text.endswith("Z") else text)
	except ValueError:
		_log.error("Corrupt timestamp in database: %r - using epoch", text)
		return _EPOCH
	return (parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)).astimezone(timezone.utc)


# Process-global; columns declared ``timestamp`` come back as aware datetimes
sqlite3.register_adapter(datetime, _timestamp_to_db)
sqlite3.register_converter("timestamp", _timestamp_from_db)


@dataclass(frozen=True)
class WalCheckpoint:
	"""Counters returned by ``PRAGMA wal_checkpoint``; -1 when it did not run."""

	mode: str
	busy: int = -1
	log_frames: int = -1
	checkpointed_frames: int = -1

	def as_dict(self) -> dict[str, int | str]:
		return asdict(self)


def _use_wal(conn: sqlite3.Connection) -> None:
	# A second worker may be creating the file at the same moment
	delay = 0.1
	for attempt in range(1, _JOURNAL_ATTEMPTS + 1):
		try:
			(mode,) = conn.execute("PRAGMA journal_mode").fetchone()
			if str(mode).lower() != "wal":
				conn.execute("PRAGMA journal_mode=WAL")
			return
		except sqlite3.OperationalError as e:
			if attempt == _JOURNAL_ATTEMPTS or "locked" not in str(e).lower():
				raise
			_log.debug("journal_mode locked (attempt %d/%d), retry in %.1fs", attempt, _JOURNAL_ATTEMPTS, delay)
			time.sleep(delay)
			delay *= 2


def connect(db_path: Path) -> sqlite3.Connection:
	"""Open a tracked connection with row access by column name."""
	db_path.parent.mkdir(parents=True, exist_ok=True)
	conn = sqlite3.connect(
		str(db_path),
		timeout=_BUSY_TIMEOUT,
		detect_types=sqlite3.PARSE_DECLTYPES,
		check_same_thread=False,
	)
	conn.row_factory = sqlite3.Row
	_use_wal(conn)
	conn.execute("PRAGMA foreign_keys=ON")
	with _tracked_lock:
		_tracked.add(conn)
	return conn


def close_connection(conn: sqlite3.Connection) -> None:
	with _tracked_lock:
		_tracked.discard(conn)
	conn.close()


@contextmanager
def open_connection(db_path: Path) -> Iterator[sqlite3.Connection]:
	"""Connection scoped to one store operation."""
	conn = connect(db_path)
	try:
		yield conn
	finally:
		close_connection(conn)


def close_all_connections() -> int:
	"""Close whatever is still open (shutdown, test teardown). Returns the count."""
	with _tracked_lock:
		leftover = list(_tracked)
		_tracked.clear()

	closed = 0
	for conn in leftover:
		try:
			conn.close()
		except sqlite3.Error as e:
			_log.warning("Failed to close SQLite connection: %s", e)
		else:
			closed += 1
	return closed


def checkpoint_wal(db_path: Path, mode: str = "TRUNCATE") -> WalCheckpoint:
	"""Fold the WAL back into the main file on a connection of its own."""
	mode = mode.strip().upper()
	if mode not in _CHECKPOINT_MODES:
		mode = "TRUNCATE"
	if not db_path.exists():
		return WalCheckpoint(mode)

	try:
		conn = sqlite3.connect(str(db_path), timeout=_BUSY_TIMEOUT)
	except sqlite3.Error as e:
		_log.warning("WAL checkpoint failed (%s): %s", mode, e)
		return WalCheckpoint(mode)
	try:
		row = conn.execute(f"PRAGMA wal_checkpoint({mode})").fetchone()
	except sqlite3.Error as e:
		_log.warning("WAL checkpoint failed (%s): %s", mode, e)
		return WalCheckpoint(mode)
	finally:
		conn.close()
	if not row:
		return WalCheckpoint(mode)
	return WalCheckpoint(mode, busy=int(row[0]), log_frames=int(row[1]), checkpointed_frames=int(row[2]))


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = False):
	"""Commit on success, roll back on error.

	``immediate`` takes the write lock up front, which compare-and-set
	updates need. Inside an open transaction this is a no-op and the
	outer block decides.
	"""
	if conn.in_transaction:
		yield
		return

	conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
	try:
		yield
	except BaseException:
		if conn.in_transaction:
			conn.rollback()
		raise
	conn.commit()
