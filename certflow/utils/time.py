#!/usr/bin/env python3
#
# certflow/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
	"""Normalize an aware datetime to UTC.

	Raises:
		ValueError: If the datetime is naive (no timezone info)
	"""
	if dt is None:
		return None
	if dt.tzinfo is None:
		raise ValueError("Naive datetime not allowed - must be timezone-aware")
	return dt.astimezone(timezone.utc)


def parse_utc(s: Optional[str]) -> Optional[datetime]:
	"""Parse an ISO-8601 timestamp coming from the ACME service.

	Accepts both 'Z' and '+00:00' suffixes. Returns None for empty,
	unparseable or naive timestamps.
	"""
	if not s:
		return None
	try:
		if s.endswith("Z"):
			s = s[:-1] + "+00:00"
		dt = datetime.fromisoformat(s)
		if dt.tzinfo is None:
			return None
		return dt.astimezone(timezone.utc)
	except (ValueError, TypeError):
		return None


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
	"""Serialize a datetime for API payloads (``None`` passes through)."""
	if dt is None:
		return None
	return ensure_utc(dt).isoformat().replace("+00:00", "Z")
