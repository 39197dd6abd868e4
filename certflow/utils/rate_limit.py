#!/usr/bin/env python3
#
# certflow/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-client request rate limiting using slowapi."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# Opening CA orders is expensive; status polling from the UI is not
RATE_LIMIT_ISSUE = "10/minute"
RATE_LIMIT_DNS_VERIFY = "20/minute"
RATE_LIMIT_API = "120/minute"

limiter = Limiter(key_func=get_remote_address)

__all__ = [
	"RATE_LIMIT_API",
	"RATE_LIMIT_DNS_VERIFY",
	"RATE_LIMIT_ISSUE",
	"limiter",
]
