#!/usr/bin/env python3
#
# certflow/api/auth.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Bearer token authentication for the management API, shared secret for the agent."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..utils.config import Config
from ..utils.deps import get_config

_log = logging.getLogger(__name__)
_security = HTTPBearer(auto_error=False)


def require_api_token(
	request: Request,
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_security),
	cfg: Config = Depends(get_config),
) -> None:
	"""Reject requests without the configured API token.

	No-op when ``CERTFLOW_API_TOKEN`` is empty (local development).
	"""
	if not cfg.api_token:
		return
	supplied = credentials.credentials if credentials else ""
	if not supplied or not hmac.compare_digest(supplied.encode("utf-8"), cfg.api_token.encode("utf-8")):
		client = request.client.host if request.client else "unknown"
		_log.warning("AUTH rejected %s %s from %s", request.method, request.url.path, client)
		raise HTTPException(
			status_code=401,
			detail="Invalid or missing API token",
			headers={"WWW-Authenticate": "Bearer"},
		)


def require_internal_secret(
	request: Request,
	x_internal_secret: str = Header(default=""),
	cfg: Config = Depends(get_config),
) -> None:
	"""Gate for the edge agent's internal endpoints.

	Unlike the API token, an empty secret disables the endpoints (503).
	"""
	if not cfg.internal_secret:
		raise HTTPException(status_code=503, detail="CERTFLOW_INTERNAL_SECRET not configured")
	if not x_internal_secret or not hmac.compare_digest(
		x_internal_secret.encode("utf-8"), cfg.internal_secret.encode("utf-8")
	):
		client = request.client.host if request.client else "unknown"
		_log.warning("AUTH internal secret rejected %s from %s", request.url.path, client)
		raise HTTPException(status_code=401, detail="Unauthorized")
