#!/usr/bin/env python3
#
# certflow/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate and domain SSL request/response models."""

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..ssl.types import Certificate, CertificateStatus, CertificateStatusView, ChallengeType, Domain, SslMode
from ..utils.time import isoformat_or_none

_CERT_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def _check_id(v: str) -> str:
	if not _CERT_ID_RE.fullmatch(v):
		raise ValueError("Invalid id format")
	return v


class IssueRequest(BaseModel):
	"""Certificate issuance payload."""
	domain_id: str = Field(..., min_length=32, max_length=32)
	challenge_type: ChallengeType = ChallengeType.HTTP01

	@field_validator("domain_id")
	@classmethod
	def domain_id_valid(cls, v: str) -> str:
		return _check_id(v)


class VerifyDnsRequest(BaseModel):
	"""DNS-01 validation payload."""
	cert_id: str = Field(..., min_length=32, max_length=32)

	@field_validator("cert_id")
	@classmethod
	def cert_id_valid(cls, v: str) -> str:
		return _check_id(v)


class SslModeRequest(BaseModel):
	ssl_mode: SslMode


class ForceHttpsRequest(BaseModel):
	force_https: bool


class CertificatePublic(BaseModel):
	"""Public certificate representation (never carries the PEM)."""
	id: str
	domain_id: str
	challenge_type: ChallengeType
	status: CertificateStatus
	order_id: Optional[str] = None
	dns_txt_name: Optional[str] = None
	dns_txt_value: Optional[str] = None
	dns_submit_attempts: int = 0
	dns_submitted_at: Optional[str] = None
	issued_at: Optional[str] = None
	expires_at: Optional[str] = None
	last_error: Optional[str] = None
	renewal_attempts: int = 0
	renewed_from: Optional[str] = None
	created_at: Optional[str] = None

	@classmethod
	def from_certificate(cls, cert: Certificate) -> "CertificatePublic":
		return cls(
			id=cert.id,
			domain_id=cert.domain_id,
			challenge_type=cert.challenge_type,
			status=cert.status,
			order_id=cert.order_id,
			dns_txt_name=cert.dns_txt_name,
			dns_txt_value=cert.dns_txt_value,
			dns_submit_attempts=cert.dns_submit_attempts,
			dns_submitted_at=isoformat_or_none(cert.dns_submitted_at),
			issued_at=isoformat_or_none(cert.issued_at),
			expires_at=isoformat_or_none(cert.expires_at),
			last_error=cert.last_error,
			renewal_attempts=cert.renewal_attempts,
			renewed_from=cert.renewed_from,
			created_at=isoformat_or_none(cert.created_at),
		)


class CertificateStatusPublic(BaseModel):
	cert_id: str
	domain_id: str
	hostname: str
	status: CertificateStatus
	challenge_type: ChallengeType
	error: Optional[str] = None
	issued_at: Optional[str] = None
	expires_at: Optional[str] = None
	renewal_attempts: int = 0
	dns_txt_name: Optional[str] = None
	dns_txt_value: Optional[str] = None
	dns_submitted: bool = False
	polling: bool = False

	@classmethod
	def from_view(cls, view: CertificateStatusView) -> "CertificateStatusPublic":
		return cls(
			cert_id=view.cert_id,
			domain_id=view.domain_id,
			hostname=view.hostname,
			status=view.status,
			challenge_type=view.challenge_type,
			error=view.error,
			issued_at=isoformat_or_none(view.issued_at),
			expires_at=isoformat_or_none(view.expires_at),
			renewal_attempts=view.renewal_attempts,
			dns_txt_name=view.dns_txt_name,
			dns_txt_value=view.dns_txt_value,
			dns_submitted=view.dns_submitted,
			polling=view.polling,
		)


class DomainSslPublic(BaseModel):
	"""SSL settings of a domain with its active and pending certificates."""
	domain_id: str
	hostname: str
	verified: bool
	ssl_mode: SslMode
	force_https: bool
	dns_instructions: dict[str, dict[str, str]]
	active_certificate: Optional[CertificatePublic] = None
	pending_certificate: Optional[CertificatePublic] = None

	@classmethod
	def from_domain(
		cls,
		domain: Domain,
		active: Optional[Certificate] = None,
		pending: Optional[Certificate] = None,
	) -> "DomainSslPublic":
		return cls(
			domain_id=domain.id,
			hostname=domain.hostname,
			verified=domain.verified,
			ssl_mode=domain.ssl_mode,
			force_https=domain.force_https,
			dns_instructions=domain.dns_instructions,
			active_certificate=CertificatePublic.from_certificate(active) if active else None,
			pending_certificate=CertificatePublic.from_certificate(pending) if pending else None,
		)


class HealthSummary(BaseModel):
	total: int
	issued: int
	expiring_soon: int
	expired: int
	pending: int
	failed: int
	revoked: int
	cancelled: int
