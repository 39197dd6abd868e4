#!/usr/bin/env python3
#
# certflow/ssl/acme_service.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Challenge issuer backed by the external ACME service.

Account keys, JWS signing and the conversation with Let's Encrypt live in
the ACME service. This module only speaks its small JSON API:

	POST   /orders                 {"hostname", "challenge_type"}
	GET    /orders/{id}
	POST   /orders/{id}/validate
	DELETE /orders/{id}
	POST   /orders/{id}/revoke
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .errors import CAError
from .types import ChallengeType, OrderResult, OrderStatus, StatusResult, SubmitResult
from ..utils.time import parse_utc

_log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30.0

# Service order states mapped onto what the orchestrator cares about
_STATUS_MAP = {
	"pending": OrderStatus.PENDING,
	"ready": OrderStatus.PENDING,
	"processing": OrderStatus.PENDING,
	"valid": OrderStatus.ISSUED,
	"issued": OrderStatus.ISSUED,
	"invalid": OrderStatus.FAILED,
	"expired": OrderStatus.FAILED,
	"revoked": OrderStatus.FAILED,
	"failed": OrderStatus.FAILED,
}


def _parse_acme_error(resp: httpx.Response) -> str:
	"""Extract the problem detail the CA sent (RFC 8555 problem documents)."""
	try:
		error = resp.json()
	except ValueError:
		return resp.text or f"HTTP {resp.status_code}"
	if not isinstance(error, dict):
		return resp.text
	detail = error.get("detail") or error.get("error") or ""
	error_type = error.get("type", "")
	if detail:
		return f"{detail} ({error_type})" if error_type else detail
	return resp.text or f"HTTP {resp.status_code}"


class AcmeServiceIssuer:
	"""``ChallengeIssuer`` implementation over HTTP."""

	def __init__(
		self,
		base_url: str,
		token: str = "",
		*,
		timeout: float = _DEFAULT_TIMEOUT,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		if not base_url:
			raise ValueError("ACME service URL is required")
		headers = {"Accept": "application/json"}
		if token:
			headers["Authorization"] = f"Bearer {token}"
		self.base_url = base_url.rstrip("/")
		self.http_client = httpx.AsyncClient(
			base_url=self.base_url,
			headers=headers,
			timeout=timeout,
			transport=transport,
		)

	async def __aenter__(self) -> "AcmeServiceIssuer":
		return self

	async def __aexit__(self, *args) -> None:
		await self.aclose()

	async def aclose(self) -> None:
		await self.http_client.aclose()

	def _raise_for_ca_error(self, resp: httpx.Response, action: str) -> None:
		"""4xx answers are the CA speaking; 5xx stay transport-level (retryable)."""
		if resp.status_code >= 500:
			resp.raise_for_status()
		if resp.status_code >= 400:
			raise CAError(f"Failed to {action}: {_parse_acme_error(resp)}")

	async def request_order(self, hostname: str, challenge_type: ChallengeType) -> OrderResult:
		resp = await self.http_client.post(
			"/orders",
			json={"hostname": hostname, "challenge_type": challenge_type.value},
		)
		self._raise_for_ca_error(resp, "create order")
		data = resp.json()

		order_id = data.get("order_id") or data.get("id")
		if not order_id:
			raise CAError("No order id in ACME service response")

		if challenge_type is ChallengeType.HTTP01:
			if not data.get("http_token"):
				raise CAError("HTTP-01 challenge not available for this domain. Try DNS-01 instead.")
			return OrderResult(
				order_id=str(order_id),
				http_token=data["http_token"],
				http_key_authorization=data.get("http_key_authorization"),
			)

		if not data.get("dns_txt_value"):
			raise CAError("DNS-01 challenge not available")
		return OrderResult(
			order_id=str(order_id),
			dns_txt_name=data.get("dns_txt_name") or f"_acme-challenge.{hostname}",
			dns_txt_value=data["dns_txt_value"],
		)

	async def query_status(self, order_id: str) -> StatusResult:
		resp = await self.http_client.get(f"/orders/{order_id}")
		self._raise_for_ca_error(resp, "poll order")
		data = resp.json()

		raw_status = str(data.get("status", "")).lower()
		status = _STATUS_MAP.get(raw_status)
		if status is None:
			_log.warning("ACME_SERVICE unknown order status %r for order=%s", raw_status, order_id)
			status = OrderStatus.PENDING

		error = data.get("error")
		if isinstance(error, dict):
			detail = error.get("detail", "")
			error = f"{detail} ({error['type']})" if detail and error.get("type") else (detail or str(error))
		if status is OrderStatus.FAILED and not error:
			error = f"Order failed: {raw_status}"

		return StatusResult(
			status=status,
			error=error,
			expires_at=parse_utc(data.get("expires_at")),
			certificate_pem=data.get("certificate_pem"),
		)

	async def submit_dns_validation(self, order_id: str) -> SubmitResult:
		resp = await self.http_client.post(f"/orders/{order_id}/validate", json={})
		if resp.status_code == 409:
			return SubmitResult(ok=False, not_yet_propagated=True, detail=_parse_acme_error(resp))
		self._raise_for_ca_error(resp, "submit DNS validation")
		data = resp.json() if resp.content else {}
		if str(data.get("status", "")).lower() == "not_yet_propagated":
			return SubmitResult(ok=False, not_yet_propagated=True, detail=data.get("detail"))
		return SubmitResult(ok=True)

	async def abandon(self, order_id: str) -> None:
		resp = await self.http_client.delete(f"/orders/{order_id}")
		if resp.status_code not in (200, 202, 204, 404):
			_log.warning(
				"ACME_SERVICE abandon order=%s returned %d: %s",
				order_id,
				resp.status_code,
				_parse_acme_error(resp),
			)

	async def revoke(self, order_id: str) -> None:
		resp = await self.http_client.post(f"/orders/{order_id}/revoke", json={})
		self._raise_for_ca_error(resp, "revoke certificate")
