#!/usr/bin/env python3
#
# certflow/api/response.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Common API response envelopes."""

from __future__ import annotations

from typing import Any

from ..ssl.errors import CertificateError, ConflictError, IssuerUnavailable, NotYetPropagated


def ok_response(
	*,
	message: str | None = None,
	data: Any = None,
	**extra: Any,
) -> dict[str, Any]:
	"""Build a success envelope: ``{"status": "ok", ...}``."""
	payload: dict[str, Any] = {"status": "ok"}
	if message is not None:
		payload["message"] = message
	if data is not None:
		payload["data"] = data
	if extra:
		payload.update(extra)
	return payload


def error_response(exc: CertificateError) -> dict[str, Any]:
	"""Envelope for a lifecycle error, with the fields callers act on.

	``NotYetPropagated`` is not a failure: it answers ``"status": "pending"``
	so the UI keeps the DNS instructions up and retries.
	"""
	payload: dict[str, Any] = {
		"status": "pending" if isinstance(exc, NotYetPropagated) else "error",
		"error": exc.message,
		"code": type(exc).__name__,
	}
	if isinstance(exc, ConflictError):
		payload["existing_cert_id"] = exc.existing_cert_id
	elif isinstance(exc, NotYetPropagated):
		payload["retry"] = True
		payload["attempts"] = exc.attempts
		payload["max_attempts"] = exc.max_attempts
	elif isinstance(exc, IssuerUnavailable):
		payload["retry"] = True
	return payload
