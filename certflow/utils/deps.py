#!/usr/bin/env python3
#
# certflow/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

from fastapi import Request

from ..ssl.facade import DomainSettingsFacade
from ..ssl.orchestrator import LifecycleOrchestrator
from .config import Config


def get_config(request: Request) -> Config:
	"""Get the application configuration from app state."""
	return request.app.state.cfg


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
	"""The orchestrator built during startup (owns this process' sessions)."""
	return request.app.state.orchestrator


def get_facade(request: Request) -> DomainSettingsFacade:
	return request.app.state.facade
