#!/usr/bin/env python3
#
# certflow/ssl/notifications.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lifecycle event fan-out.

Listeners run in-process (UI push, audit hooks, tests). The edge agent that
installs certificates on the reverse proxy is told about issued, renewed and
revoked certificates through a signed webhook.
"""

from __future__ import annotations

import hashlib
import hmac
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from .types import CertificateStatus

_log = logging.getLogger(__name__)

_AGENT_TIMEOUT = 8.0
_AGENT_EVENTS = frozenset({"cert.issued", "cert.renewed", "cert.revoked"})

EVENT_ISSUED = "cert.issued"
EVENT_RENEWED = "cert.renewed"
EVENT_FAILED = "cert.failed"
EVENT_REVOKED = "cert.revoked"
EVENT_CANCELLED = "cert.cancelled"


@dataclass(frozen=True)
class IssuanceEvent:
	event: str
	cert_id: str
	domain_id: str
	hostname: str
	status: CertificateStatus
	error: Optional[str] = None
	expires_at: Optional[datetime] = None


Listener = Callable[[IssuanceEvent], Optional[Awaitable[None]]]


def sign_payload(body: bytes, secret: str) -> str:
	"""Value of the ``X-Certflow-Signature`` header."""
	return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class Notifier:
	"""Delivers lifecycle events. ``emit`` never raises."""

	def __init__(
		self,
		*,
		agent_url: str = "",
		agent_secret: str = "",
		sandbox: bool = False,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.agent_url = agent_url.rstrip("/")
		self.agent_secret = agent_secret
		self.sandbox = sandbox
		self._listeners: list[Listener] = []
		self._http_client: Optional[httpx.AsyncClient] = None
		if self.agent_url and self.agent_secret:
			self._http_client = httpx.AsyncClient(timeout=_AGENT_TIMEOUT, transport=transport)

	def subscribe(self, listener: Listener) -> Callable[[], None]:
		"""Register ``listener``; returns a callable that removes it again."""
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	async def emit(self, event: IssuanceEvent) -> None:
		_log.info(
			"EVENT %s cert=%s domain=%s%s",
			event.event,
			event.cert_id,
			event.hostname,
			f" error={event.error}" if event.error else "",
		)
		for listener in list(self._listeners):
			try:
				result = listener(event)
				if inspect.isawaitable(result):
					await result
			except Exception:
				_log.exception("EVENT listener %r failed for %s cert=%s", listener, event.event, event.cert_id)

		if event.event in _AGENT_EVENTS:
			await self._notify_agent(event)

	async def _notify_agent(self, event: IssuanceEvent) -> None:
		# No-op without agent URL and secret
		if self._http_client is None:
			return

		payload: dict[str, str] = {"event": event.event, "domain": event.hostname}
		if event.event != EVENT_REVOKED:
			payload["cert_id"] = event.cert_id
			payload["mode"] = "sandbox" if self.sandbox else "live"
		body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

		try:
			resp = await self._http_client.post(
				f"{self.agent_url}/webhook",
				content=body,
				headers={
					"Content-Type": "application/json",
					"X-Certflow-Signature": sign_payload(body, self.agent_secret),
				},
			)
		except httpx.HTTPError as exc:
			_log.warning("AGENT_WEBHOOK %s failed: %s", event.event, exc)
			return
		if resp.status_code >= 400:
			_log.warning("AGENT_WEBHOOK agent returned %d: %s", resp.status_code, resp.text[:200])

	async def aclose(self) -> None:
		if self._http_client is not None:
			await self._http_client.aclose()
			self._http_client = None
