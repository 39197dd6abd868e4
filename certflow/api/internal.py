#!/usr/bin/env python3
#
# certflow/api/internal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Internal API for the edge agent.

After a ``cert.issued`` / ``cert.renewed`` webhook the agent fetches the
certificate here and installs it on the reverse proxy. The private key never
leaves the ACME service, so only the PEM chain is returned.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..ssl.orchestrator import LifecycleOrchestrator
from ..utils.deps import get_orchestrator
from ..utils.time import isoformat_or_none
from .auth import require_internal_secret
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["internal"], dependencies=[Depends(require_internal_secret)])


@router.get("/cert/{hostname}")
async def get_certificate_bundle(
	hostname: str,
	orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> dict:
	cert = await orchestrator.get_active_bundle(hostname)
	if cert is None:
		raise HTTPException(status_code=404, detail="No active certificate found for this domain")
	_log.info("INTERNAL_CERT served cert=%s host=%s", cert.id, hostname)
	return ok_response(
		cert_id=cert.id,
		certificate=cert.certificate_pem,
		expires_at=isoformat_or_none(cert.expires_at),
	)
