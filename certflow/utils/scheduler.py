#!/usr/bin/env python3
#
# certflow/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic jobs run by the leader worker.

The renewal sweep and the SQLite upkeep jobs are registered once at startup.
Each job gets its own task so a slow sweep never delays the leader heartbeat.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypedDict

from .time import isoformat_or_none, utcnow

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

_MIN_INTERVAL = 1.0
_MAX_BACKOFF = 300.0

JobFunc = Callable[[], Awaitable[object]]


class JobStatus(TypedDict):
	name: str
	interval_seconds: float
	last_success: str | None
	last_attempt: str | None
	is_running: bool
	run_count: int
	fail_count: int


@dataclass
class _Job:
	name: str
	interval_seconds: float
	func: JobFunc
	first_delay: float
	timeout: float | None = None
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	run_count: int = 0
	fail_count: int = 0
	streak: int = 0

	def next_slot(self, previous: float, now: float) -> float:
		"""First interval boundary after ``now`` (and after backoff on failure)."""
		earliest = now
		if self.streak:
			earliest += min(2.0**self.streak, _MAX_BACKOFF)
		if previous + self.interval_seconds > earliest:
			return previous + self.interval_seconds
		missed = math.floor((earliest - previous) / self.interval_seconds) + 1
		if not self.streak:
			_log.warning("SCHEDULER job=%s skipped %d intervals", self.name, missed - 1)
		return previous + missed * self.interval_seconds


class Scheduler:
	"""Fixed-interval job runner with graceful stop.

	A failing job backs off exponentially, capped at five minutes, and then
	rejoins its regular rhythm.
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._stopping = asyncio.Event()
		self._running = False

	def add(
		self,
		name: str,
		interval_seconds: float,
		func: JobFunc,
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
	) -> None:
		"""Register ``func`` to run every ``interval_seconds``.

		Without ``run_on_start`` the first run happens one interval after
		start. ``initial_delay`` postpones that first run and only makes
		sense together with ``run_on_start``.
		"""
		if self._running:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")
		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")
		if interval_seconds < _MIN_INTERVAL:
			raise ValueError(f"interval_seconds must be >= {_MIN_INTERVAL}, got {interval_seconds}")
		if initial_delay < 0:
			raise ValueError(f"initial_delay must be >= 0, got {initial_delay}")
		if initial_delay and not run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")

		self._jobs[name] = _Job(
			name=name,
			interval_seconds=interval_seconds,
			func=func,
			first_delay=initial_delay if run_on_start else interval_seconds,
			timeout=timeout,
		)

	async def start(self) -> None:
		if self._running:
			return
		self._running = True
		self._stopping = asyncio.Event()
		for name, job in self._jobs.items():
			self._tasks[name] = asyncio.create_task(self._loop(job), name=f"job:{name}")
			_log.info("SCHEDULER job=%s interval=%ds started", name, job.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Ask every loop to finish, cancelling those still busy after ``timeout``."""
		if not self._running:
			return
		self._running = False
		self._stopping.set()

		busy = [task for task in self._tasks.values() if not task.done()]
		if busy:
			_, stuck = await asyncio.wait(busy, timeout=timeout)
			if stuck:
				_log.warning("SCHEDULER %d tasks did not stop gracefully, forcing cancel", len(stuck))
				for task in stuck:
					task.cancel()
				await asyncio.gather(*stuck, return_exceptions=True)

		self._tasks.clear()
		_log.info("SCHEDULER stopped")

	async def _wait(self, seconds: float) -> bool:
		"""Sleep unless stopping. True means the job should run now."""
		try:
			await asyncio.wait_for(self._stopping.wait(), timeout=max(seconds, 0.0))
		except asyncio.TimeoutError:
			return self._running
		return False

	async def _loop(self, job: _Job) -> None:
		clock = asyncio.get_running_loop().time
		due = clock() + job.first_delay
		try:
			while await self._wait(due - clock()):
				if await self._run_once(job):
					job.streak = 0
				else:
					job.streak += 1
					_log.error("SCHEDULER job=%s failed (%d consecutive)", job.name, job.streak)
				due = job.next_slot(due, clock())
		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s cancelled", job.name)
		except Exception:
			_log.exception("SCHEDULER job=%s fatal error in run loop", job.name)

	async def _run_once(self, job: _Job) -> bool:
		job.last_attempt = utcnow()
		try:
			await asyncio.wait_for(job.func(), timeout=job.timeout)
		except asyncio.TimeoutError:
			job.fail_count += 1
			_log.error("SCHEDULER job=%s timed out after %.1fs", job.name, job.timeout)
			return False
		except Exception:
			job.fail_count += 1
			_log.exception("SCHEDULER job=%s raised", job.name)
			return False

		job.last_success = job.last_attempt
		job.run_count += 1
		_log.info("SCHEDULER job=%s completed (run #%d)", job.name, job.run_count)
		return True

	def get_status(self) -> list[JobStatus]:
		"""Per-job counters for the health endpoint."""
		statuses: list[JobStatus] = []
		for name, job in self._jobs.items():
			task = self._tasks.get(name)
			statuses.append(
				JobStatus(
					name=name,
					interval_seconds=job.interval_seconds,
					last_success=isoformat_or_none(job.last_success),
					last_attempt=isoformat_or_none(job.last_attempt),
					is_running=task is not None and not task.done(),
					run_count=job.run_count,
					fail_count=job.fail_count,
				)
			)
		return statuses
