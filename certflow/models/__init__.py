#!/usr/bin/env python3
#
# certflow/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic models for certflow."""

from .certificates import (
	CertificatePublic,
	CertificateStatusPublic,
	DomainSslPublic,
	ForceHttpsRequest,
	HealthSummary,
	IssueRequest,
	SslModeRequest,
	VerifyDnsRequest,
)

__all__ = [
	# Requests
	"IssueRequest",
	"VerifyDnsRequest",
	"SslModeRequest",
	"ForceHttpsRequest",
	# Responses
	"CertificatePublic",
	"CertificateStatusPublic",
	"DomainSslPublic",
	"HealthSummary",
]
