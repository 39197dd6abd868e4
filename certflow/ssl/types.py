#!/usr/bin/env python3
#
# certflow/ssl/types.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Domain and certificate value types shared by the store, issuer and orchestrator."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class ChallengeType(str, Enum):
	"""ACME challenge used to prove control over a hostname."""
	HTTP01 = "HTTP01"
	DNS01 = "DNS01"

	@property
	def pending_status(self) -> "CertificateStatus":
		if self is ChallengeType.HTTP01:
			return CertificateStatus.PENDING_HTTP01
		return CertificateStatus.PENDING_DNS01


class CertificateStatus(str, Enum):
	PENDING_HTTP01 = "PENDING_HTTP01"
	PENDING_DNS01 = "PENDING_DNS01"
	ISSUED = "ISSUED"
	FAILED = "FAILED"
	REVOKED = "REVOKED"
	CANCELLED = "CANCELLED"

	@property
	def is_pending(self) -> bool:
		return self in PENDING_STATUSES

	@property
	def is_terminal(self) -> bool:
		return self not in PENDING_STATUSES


PENDING_STATUSES = frozenset({CertificateStatus.PENDING_HTTP01, CertificateStatus.PENDING_DNS01})


class SslMode(str, Enum):
	NONE = "NONE"
	LETS_ENCRYPT = "LETS_ENCRYPT"
	EXTERNAL = "EXTERNAL"


class OrderStatus(str, Enum):
	"""Order state as reported by the challenge issuer."""
	PENDING = "PENDING"
	ISSUED = "ISSUED"
	FAILED = "FAILED"


# CNAME target customers point their hostname at
CNAME_TARGET = "domains.certflow.app"


@dataclass(frozen=True)
class Domain:
	id: str
	hostname: str
	project_id: str
	verification_token: str
	verified: bool
	ssl_mode: SslMode
	force_https: bool
	created_at: datetime
	verified_at: Optional[datetime] = None

	@classmethod
	def from_row(cls, row: sqlite3.Row) -> "Domain":
		return cls(
			id=row["id"],
			hostname=row["hostname"],
			project_id=row["project_id"],
			verification_token=row["verification_token"],
			verified=bool(row["verified"]),
			ssl_mode=SslMode(row["ssl_mode"]),
			force_https=bool(row["force_https"]),
			created_at=row["created_at"],
			verified_at=row["verified_at"],
		)

	@property
	def dns_instructions(self) -> dict[str, dict[str, str]]:
		"""CNAME/TXT records the owner publishes to verify the hostname."""
		return {
			"cname": {
				"name": self.hostname,
				"value": CNAME_TARGET,
				"description": "Point your domain at the changelog host",
			},
			"txt": {
				"name": f"_certflow-verify.{self.hostname}",
				"value": self.verification_token,
				"description": "Proves ownership of the domain",
			},
		}


@dataclass(frozen=True)
class Certificate:
	id: str
	domain_id: str
	challenge_type: ChallengeType
	status: CertificateStatus
	created_at: datetime
	updated_at: datetime
	order_id: Optional[str] = None
	http_token: Optional[str] = None
	http_key_authorization: Optional[str] = None
	dns_txt_name: Optional[str] = None
	dns_txt_value: Optional[str] = None
	dns_submit_attempts: int = 0
	dns_submitted_at: Optional[datetime] = None
	polling_started_at: Optional[datetime] = None
	issued_at: Optional[datetime] = None
	expires_at: Optional[datetime] = None
	last_error: Optional[str] = None
	renewal_attempts: int = 0
	renewed_from: Optional[str] = None
	certificate_pem: Optional[str] = field(default=None, repr=False)

	@classmethod
	def from_row(cls, row: sqlite3.Row) -> "Certificate":
		return cls(
			id=row["id"],
			domain_id=row["domain_id"],
			challenge_type=ChallengeType(row["challenge_type"]),
			status=CertificateStatus(row["status"]),
			created_at=row["created_at"],
			updated_at=row["updated_at"],
			order_id=row["order_id"],
			http_token=row["http_token"],
			http_key_authorization=row["http_key_authorization"],
			dns_txt_name=row["dns_txt_name"],
			dns_txt_value=row["dns_txt_value"],
			dns_submit_attempts=row["dns_submit_attempts"],
			dns_submitted_at=row["dns_submitted_at"],
			polling_started_at=row["polling_started_at"],
			issued_at=row["issued_at"],
			expires_at=row["expires_at"],
			last_error=row["last_error"],
			renewal_attempts=row["renewal_attempts"],
			renewed_from=row["renewed_from"],
			certificate_pem=row["certificate_pem"],
		)

	@property
	def is_pending(self) -> bool:
		return self.status.is_pending

	@property
	def is_pollable(self) -> bool:
		"""Whether a poller may watch this row.

		DNS-01 orders are only polled after the validation was submitted.
		"""
		if not self.is_pending or self.order_id is None:
			return False
		if self.challenge_type is ChallengeType.DNS01:
			return self.dns_submitted_at is not None
		return True


# ---------------------------------------------------------------------------
# Store create result (tagged variant)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Created:
	certificate: Certificate


@dataclass(frozen=True)
class CreateConflict:
	"""Another pending certificate already exists for the domain."""
	existing_id: str


CreateResult = Union[Created, CreateConflict]


# ---------------------------------------------------------------------------
# Challenge issuer results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrderResult:
	order_id: str
	http_token: Optional[str] = None
	http_key_authorization: Optional[str] = None
	dns_txt_name: Optional[str] = None
	dns_txt_value: Optional[str] = None


@dataclass(frozen=True)
class StatusResult:
	status: OrderStatus
	error: Optional[str] = None
	expires_at: Optional[datetime] = None
	certificate_pem: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class SubmitResult:
	ok: bool
	not_yet_propagated: bool = False
	detail: Optional[str] = None


@dataclass(frozen=True)
class CertificateStatusView:
	"""What callers observe through ``get_status``."""
	cert_id: str
	domain_id: str
	hostname: str
	status: CertificateStatus
	challenge_type: ChallengeType
	error: Optional[str] = None
	issued_at: Optional[datetime] = None
	expires_at: Optional[datetime] = None
	renewal_attempts: int = 0
	dns_txt_name: Optional[str] = None
	dns_txt_value: Optional[str] = None
	dns_submitted: bool = False
	polling: bool = False
