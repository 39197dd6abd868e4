#!/usr/bin/env python3
#
# certflow/api/domains.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Custom domain SSL settings API."""

import logging

from fastapi import APIRouter, Depends, Path

from ..models.certificates import CertificatePublic, DomainSslPublic, ForceHttpsRequest, SslModeRequest
from ..ssl.facade import DomainSettingsFacade
from ..ssl.types import SslMode
from ..utils.deps import get_facade
from .auth import require_api_token
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["custom-domains"], dependencies=[Depends(require_api_token)])

_ID_PATTERN = r"^[0-9a-f]{32}$"


@router.get("/{domain_id}/ssl")
async def get_ssl_settings(
	domain_id: str = Path(..., pattern=_ID_PATTERN),
	facade: DomainSettingsFacade = Depends(get_facade),
) -> dict:
	"""Mode, HTTPS enforcement and the active / pending certificate.

	The UI resumes tracking ``pending_certificate`` when it is set.
	"""
	summary = await facade.get_ssl_summary(domain_id)
	payload = DomainSslPublic.from_domain(summary["domain"], summary["active"], summary["pending"])
	return ok_response(data=payload.model_dump(mode="json"))


@router.post("/{domain_id}/ssl/mode")
async def set_ssl_mode(
	req: SslModeRequest,
	domain_id: str = Path(..., pattern=_ID_PATTERN),
	facade: DomainSettingsFacade = Depends(get_facade),
) -> dict:
	active = await facade.set_ssl_mode(domain_id, req.ssl_mode)
	needs_issuance = req.ssl_mode is SslMode.LETS_ENCRYPT and active is None
	return ok_response(
		message=f"SSL mode set to {req.ssl_mode.value}",
		ssl_mode=req.ssl_mode.value,
		needs_issuance=needs_issuance,
		active_certificate=CertificatePublic.from_certificate(active).model_dump(mode="json") if active else None,
	)


@router.post("/{domain_id}/ssl/toggle-https")
async def toggle_force_https(
	req: ForceHttpsRequest,
	domain_id: str = Path(..., pattern=_ID_PATTERN),
	facade: DomainSettingsFacade = Depends(get_facade),
) -> dict:
	enabled = await facade.toggle_force_https(domain_id, req.force_https)
	return ok_response(
		message="HTTPS enforcement enabled" if enabled else "HTTPS enforcement disabled",
		force_https=enabled,
	)
