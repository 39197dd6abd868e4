#!/usr/bin/env python3
#
# certflow/ssl/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle for custom domains."""

# Only leaf modules here: the stores import the types from this package

from .errors import (
	CAError,
	CertificateError,
	CertificateNotFound,
	ConflictError,
	DomainNotFound,
	InvalidTransition,
	IssuanceTimeout,
	NotYetPropagated,
	PreconditionFailed,
	RateLimited,
)
from .types import (
	PENDING_STATUSES,
	Certificate,
	CertificateStatus,
	CertificateStatusView,
	ChallengeType,
	CreateConflict,
	Created,
	Domain,
	SslMode,
)

__all__ = [
	# Errors
	"CAError",
	"CertificateError",
	"CertificateNotFound",
	"ConflictError",
	"DomainNotFound",
	"InvalidTransition",
	"IssuanceTimeout",
	"NotYetPropagated",
	"PreconditionFailed",
	"RateLimited",
	# Types
	"PENDING_STATUSES",
	"Certificate",
	"CertificateStatus",
	"CertificateStatusView",
	"ChallengeType",
	"CreateConflict",
	"Created",
	"Domain",
	"SslMode",
]
