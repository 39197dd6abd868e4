#!/usr/bin/env python3
#
# certflow/ssl/issuer.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Challenge issuer interface consumed by the orchestrator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .types import ChallengeType, OrderResult, StatusResult, SubmitResult


@runtime_checkable
class ChallengeIssuer(Protocol):
	"""Talks to the CA on behalf of the orchestrator.

	Implementations raise ``CAError`` for answers the CA gave on purpose
	(rejected order, unknown order) and let transport errors propagate; the
	poller treats the latter as transient.
	"""

	async def request_order(self, hostname: str, challenge_type: ChallengeType) -> OrderResult:
		"""Open a new order and return the challenge the owner must satisfy."""
		...

	async def query_status(self, order_id: str) -> StatusResult:
		...

	async def submit_dns_validation(self, order_id: str) -> SubmitResult:
		"""Ask the CA to validate the DNS-01 TXT record now."""
		...

	async def abandon(self, order_id: str) -> None:
		"""Best effort; callers ignore failures."""
		...

	async def revoke(self, order_id: str) -> None:
		...

	async def aclose(self) -> None:
		...
