#!/usr/bin/env python3
#
# certflow/ssl/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle error taxonomy."""

from __future__ import annotations


class CertificateError(Exception):
	"""Base class for all lifecycle errors."""

	status_code = 500

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message


class ConflictError(CertificateError):
	"""An issuance is already in flight for the domain.

	Not fatal: the caller should switch to observing ``existing_cert_id``.
	"""

	status_code = 409

	def __init__(self, existing_cert_id: str, message: str | None = None) -> None:
		super().__init__(message or "Certificate issuance already in progress")
		self.existing_cert_id = existing_cert_id


class NotYetPropagated(CertificateError):
	"""The CA checked the DNS-01 TXT record before it was visible. Retry later."""

	status_code = 202

	def __init__(self, message: str | None = None, *, attempts: int = 0, max_attempts: int = 0) -> None:
		super().__init__(
			message or "DNS TXT record not yet propagated. Please wait a few minutes and try again."
		)
		self.attempts = attempts
		self.max_attempts = max_attempts


class IssuanceTimeout(CertificateError):
	"""The issuance ran out of time and the certificate is now FAILED."""

	status_code = 504


class CAError(CertificateError):
	"""The CA (or the ACME service in front of it) rejected the request.

	The message is passed through verbatim for diagnostics.
	"""

	status_code = 502


class IssuerUnavailable(CertificateError):
	"""The ACME service could not be reached. Nothing was persisted; retry later."""

	status_code = 503


class PreconditionFailed(CertificateError):
	status_code = 400


class InvalidTransition(CertificateError):
	status_code = 400


class CertificateNotFound(CertificateError):
	status_code = 404

	def __init__(self, cert_id: str) -> None:
		super().__init__(f"Certificate not found: {cert_id}")
		self.cert_id = cert_id


class DomainNotFound(CertificateError):
	status_code = 404

	def __init__(self, domain_ref: str) -> None:
		super().__init__(f"Domain not found: {domain_ref}")
		self.domain_ref = domain_ref


class RateLimited(CertificateError):
	"""Weekly issuance budget for the registered domain is exhausted."""

	status_code = 429
