#!/usr/bin/env python3
#
# certflow/api/acme.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate issuance API.

Lifecycle errors raised by the orchestrator are mapped to HTTP responses by
the exception handler registered in ``certflow.main``.
"""

import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Path, Request, Response
from fastapi.responses import PlainTextResponse

from ..models.certificates import (
	CertificatePublic,
	CertificateStatusPublic,
	HealthSummary,
	IssueRequest,
	VerifyDnsRequest,
)
from ..ssl.orchestrator import LifecycleOrchestrator
from ..ssl.renewal import check_certificate_health, run_auto_renewal
from ..ssl.types import Certificate, ChallengeType
from ..utils.config import Config
from ..utils.deps import get_config, get_orchestrator
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_DNS_VERIFY, RATE_LIMIT_ISSUE, limiter
from .auth import require_api_token
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["acme"], dependencies=[Depends(require_api_token)])
challenge_router = APIRouter(tags=["acme-challenge"])

_ID_PATTERN = r"^[0-9a-f]{32}$"
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]{1,256}$")


def _certificate_payload(cert: Certificate) -> dict:
	return CertificatePublic.from_certificate(cert).model_dump(mode="json")


def _dns_record(cert: Certificate) -> dict | None:
	if cert.challenge_type is not ChallengeType.DNS01 or not cert.is_pending or not cert.dns_txt_value:
		return None
	return {"type": "TXT", "name": cert.dns_txt_name, "value": cert.dns_txt_value}


@router.post("/issue", status_code=201)
@limiter.limit(RATE_LIMIT_ISSUE)
async def issue_certificate(
	request: Request,
	response: Response,
	req: IssueRequest,
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	"""Start an issuance, or resume observing the one already pending.

	DNS-01 answers carry the TXT record the owner has to publish before
	calling ``/verify-dns``.
	"""
	cert, resumed = await orchestrator.issue_or_resume(req.domain_id, req.challenge_type)
	if resumed:
		response.status_code = 200

	if cert.challenge_type is ChallengeType.DNS01:
		message = "Add the DNS TXT record, then verify it"
	else:
		message = "Certificate issuance started"
	if resumed:
		message = "Certificate issuance already in progress"

	return ok_response(
		message=message,
		cert_id=cert.id,
		resumed=resumed,
		certificate_status=cert.status.value,
		dns_record=_dns_record(cert),
		data=_certificate_payload(cert),
	)


@router.post("/verify-dns")
@limiter.limit(RATE_LIMIT_DNS_VERIFY)
async def verify_dns(
	request: Request,
	req: VerifyDnsRequest,
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	"""Ask the CA to validate the DNS-01 TXT record.

	Answers 202 with ``retry: true`` while the record has not propagated.
	"""
	result = await orchestrator.submit_dns_challenge(req.cert_id)
	return ok_response(message="DNS record validated, waiting for the certificate", result=result, cert_id=req.cert_id)


@router.get("/status/{cert_id}")
@limiter.limit(RATE_LIMIT_API)
async def certificate_status(
	request: Request,
	cert_id: str = Path(..., pattern=_ID_PATTERN),
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	view = await orchestrator.get_status(cert_id)
	payload = CertificateStatusPublic.from_view(view).model_dump(mode="json")
	# "status" is the envelope's; the certificate state goes under its own key
	return ok_response(
		data=payload,
		cert_id=view.cert_id,
		certificate_status=view.status.value,
		error=view.error,
	)


@router.post("/cancel/{cert_id}")
async def cancel_issuance(
	cert_id: str = Path(..., pattern=_ID_PATTERN),
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	cert = await orchestrator.cancel_issuance(cert_id)
	return ok_response(message="Certificate issuance cancelled", cert_id=cert.id, data=_certificate_payload(cert))


@router.post("/renew/{cert_id}", status_code=201)
@limiter.limit(RATE_LIMIT_ISSUE)
async def renew_certificate(
	request: Request,
	cert_id: str = Path(..., pattern=_ID_PATTERN),
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	"""Open a renewal; the current certificate stays active until it completes."""
	cert = await orchestrator.renew(cert_id)
	return ok_response(
		message="Certificate renewal started",
		cert_id=cert.id,
		renewed_from=cert_id,
		dns_record=_dns_record(cert),
		data=_certificate_payload(cert),
	)


@router.post("/revoke/{cert_id}")
async def revoke_certificate(
	cert_id: str = Path(..., pattern=_ID_PATTERN),
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	cert = await orchestrator.revoke(cert_id)
	return ok_response(message="Certificate revoked", cert_id=cert.id, data=_certificate_payload(cert))


@router.get("/domains/{domain_id}/certificates")
async def list_domain_certificates(
	domain_id: str = Path(..., pattern=_ID_PATTERN),
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	"""Certificate history of a domain, newest first."""
	certificates = await orchestrator.list_certificates(domain_id)
	return ok_response(data=[_certificate_payload(cert) for cert in certificates])


@router.get("/health")
async def certificate_health(
	request: Request,
	cfg: Config = Depends(get_config),
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	health = await check_certificate_health(orchestrator, threshold_days=cfg.renewal_threshold_days)
	scheduler = getattr(request.app.state, "scheduler", None)
	return ok_response(
		data=HealthSummary(**health).model_dump(),
		is_leader=getattr(request.app.state, "is_leader", False),
		jobs=scheduler.get_status() if scheduler else [],
	)


@router.post("/renewal/run")
async def trigger_renewal(
	cfg: Config = Depends(get_config),
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	"""Run the renewal sweep now instead of waiting for the scheduler."""
	summary = await run_auto_renewal(
		orchestrator,
		threshold_days=cfg.renewal_threshold_days,
		batch_size=cfg.renewal_batch_size,
	)
	return ok_response(message=f"Processed {summary['checked']} expiring certificates", data=summary)


@challenge_router.get("/.well-known/acme-challenge/{token}", response_class=PlainTextResponse)
async def serve_challenge(
	token: str,
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> str:
	"""HTTP-01 key authorization for a pending certificate.

	Unauthenticated: the CA fetches it over plain HTTP.
	"""
	# Validate token format to keep junk out of the database and logs
	if not _TOKEN_RE.fullmatch(token):
		raise HTTPException(status_code=404, detail="Challenge not found")

	cert = await orchestrator.certificates.get_by_http_token(token)
	if cert is None or not cert.http_key_authorization:
		raise HTTPException(status_code=404, detail="Challenge not found")
	_log.info("ACME_CHALLENGE served cert=%s", cert.id)
	return cert.http_key_authorization
