#!/usr/bin/env python3
#
# certflow/ssl/sandbox.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process simulated CA for sandbox deployments.

Lets the whole issuance flow (challenge, polling, database updates, agent
webhooks) run without touching Let's Encrypt rate limits.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from .errors import CAError
from .types import ChallengeType, OrderResult, OrderStatus, StatusResult, SubmitResult
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

SANDBOX_VALIDITY = timedelta(days=90)


def mint_sandbox_certificate(hostname: str, validity: timedelta = SANDBOX_VALIDITY) -> tuple[str, x509.Certificate]:
	"""Create a self-signed leaf for ``hostname``. Returns (PEM, certificate)."""
	key = ec.generate_private_key(ec.SECP256R1())
	name = x509.Name([
		x509.NameAttribute(NameOID.COMMON_NAME, hostname),
		x509.NameAttribute(NameOID.ORGANIZATION_NAME, "certflow sandbox"),
	])
	now = utcnow()
	cert = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(now - timedelta(minutes=1))
		.not_valid_after(now + validity)
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
		.sign(key, hashes.SHA256())
	)
	return cert.public_bytes(serialization.Encoding.PEM).decode("ascii"), cert


@dataclass
class _SandboxOrder:
	hostname: str
	challenge_type: ChallengeType
	created: float
	queries: int = 0
	submitted: bool = False
	abandoned: bool = False
	revoked: bool = False


class SandboxIssuer:
	"""``ChallengeIssuer`` that simulates a CA.

	HTTP-01 orders are issued after ``ticks_to_issue`` status queries. DNS-01
	orders answer NotYetPropagated until ``propagation_delay`` seconds passed
	since the order was opened, then behave like HTTP-01 orders.
	"""

	def __init__(self, *, ticks_to_issue: int = 2, propagation_delay: float = 0.0) -> None:
		self.ticks_to_issue = ticks_to_issue
		self.propagation_delay = propagation_delay
		self._orders: dict[str, _SandboxOrder] = {}

	def _order(self, order_id: str) -> _SandboxOrder:
		order = self._orders.get(order_id)
		if order is None:
			raise CAError(f"Unknown sandbox order: {order_id}")
		return order

	async def request_order(self, hostname: str, challenge_type: ChallengeType) -> OrderResult:
		order_id = f"sandbox-{secrets.token_hex(8)}"
		self._orders[order_id] = _SandboxOrder(
			hostname=hostname,
			challenge_type=challenge_type,
			created=asyncio.get_running_loop().time(),
		)
		_log.info("SANDBOX order=%s hostname=%s challenge=%s", order_id, hostname, challenge_type.value)
		if challenge_type is ChallengeType.HTTP01:
			token = secrets.token_urlsafe(32)
			return OrderResult(
				order_id=order_id,
				http_token=token,
				http_key_authorization=f"{token}.sandbox",
			)
		return OrderResult(
			order_id=order_id,
			dns_txt_name=f"_acme-challenge.{hostname}",
			dns_txt_value=secrets.token_urlsafe(32),
		)

	async def query_status(self, order_id: str) -> StatusResult:
		order = self._order(order_id)
		if order.abandoned:
			return StatusResult(status=OrderStatus.FAILED, error="Order abandoned")
		if order.challenge_type is ChallengeType.DNS01 and not order.submitted:
			return StatusResult(status=OrderStatus.PENDING)
		order.queries += 1
		if order.queries < self.ticks_to_issue:
			return StatusResult(status=OrderStatus.PENDING)
		pem, cert = mint_sandbox_certificate(order.hostname)
		return StatusResult(
			status=OrderStatus.ISSUED,
			expires_at=cert.not_valid_after_utc,
			certificate_pem=pem,
		)

	async def submit_dns_validation(self, order_id: str) -> SubmitResult:
		order = self._order(order_id)
		elapsed = asyncio.get_running_loop().time() - order.created
		if elapsed < self.propagation_delay:
			return SubmitResult(
				ok=False,
				not_yet_propagated=True,
				detail=f"TXT record not visible yet ({elapsed:.0f}s < {self.propagation_delay:.0f}s)",
			)
		order.submitted = True
		return SubmitResult(ok=True)

	async def abandon(self, order_id: str) -> None:
		order = self._orders.get(order_id)
		if order is not None:
			order.abandoned = True

	async def revoke(self, order_id: str) -> None:
		self._order(order_id).revoked = True

	async def aclose(self) -> None:
		self._orders.clear()
