#!/usr/bin/env python3
#
# certflow/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .api import acme as acme_api
from .api import domains as domains_api
from .api import internal as internal_api
from .api.response import error_response
from .db.sqlite_leader import release_leader_lock, try_acquire_leader_lock
from .db.sqlite_runtime import checkpoint_wal, close_all_connections, open_connection
from .db.sqlite_schema import init_schema
from .ssl.acme_service import AcmeServiceIssuer
from .ssl.errors import CertificateError
from .ssl.facade import DomainSettingsFacade
from .ssl.issuer import ChallengeIssuer
from .ssl.notifications import Notifier
from .ssl.orchestrator import LifecycleOrchestrator
from .ssl.renewal import run_auto_renewal
from .ssl.sandbox import SandboxIssuer
from .tasks.maintenance import sqlite_integrity_check, sqlite_maintenance
from .utils.config import Config, ConfigValidationError, load_config
from .utils.rate_limit import limiter
from .utils.request_id import RequestIDMiddleware
from .utils.scheduler import Scheduler

_log = logging.getLogger(__name__)

_LEVEL_COLORS = {
	"DEBUG": "\033[36m",
	"INFO": "\033[32m",
	"WARNING": "\033[33m",
	"ERROR": "\033[31m",
	"CRITICAL": "\033[35m",
}
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Every poll tick is an HTTP call; keep client chatter out of the log
_QUIET_LOGGERS = ("httpcore", "httpx", "aiosqlite")

_LEADER_HEARTBEAT_SECONDS = 20.0


class _LevelFormatter(logging.Formatter):
	"""Pads the level name, colouring it when ``colour`` is set."""

	def __init__(self, *, colour: bool) -> None:
		super().__init__(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
		self.colour = colour

	def format(self, record):
		plain = record.levelname
		padded = f"{plain:<8}"
		if self.colour and plain in _LEVEL_COLORS:
			padded = f"{_LEVEL_COLORS[plain]}{padded}\033[0m"
		record.levelname = padded
		try:
			return super().format(record)
		finally:
			record.levelname = plain


def _setup_logging(log_level: str) -> None:
	"""Route the app, uvicorn and library loggers through one stdout handler."""
	level = getattr(logging, log_level, logging.INFO)
	handler = logging.StreamHandler(sys.stdout)
	handler.setFormatter(_LevelFormatter(colour=sys.stdout.isatty()))
	# force=True drops handlers installed earlier (e.g. by uvicorn)
	logging.basicConfig(level=level, handlers=[handler], force=True)

	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True
	for name in _QUIET_LOGGERS:
		logging.getLogger(name).setLevel(logging.WARNING)


def _build_issuer(cfg: Config) -> ChallengeIssuer:
	if cfg.sandbox_mode:
		_log.warning("SANDBOX mode: certificates are self-signed and not trusted by browsers")
		return SandboxIssuer()
	if not cfg.acme_service_url:
		raise ConfigValidationError(
			"CERTFLOW_ACME_SERVICE_URL is required unless CERTFLOW_SANDBOX_MODE is enabled"
		)
	return AcmeServiceIssuer(cfg.acme_service_url, cfg.acme_service_token)


async def _certificate_error_handler(request: Request, exc: CertificateError) -> JSONResponse:
	if exc.status_code >= 500:
		_log.error("API %s %s failed: %s", request.method, request.url.path, exc.message)
	return JSONResponse(status_code=exc.status_code, content=error_response(exc))


def _register_jobs(scheduler: Scheduler, cfg: Config, orchestrator: LifecycleOrchestrator) -> None:
	async def _renew_expiring() -> None:
		await run_auto_renewal(
			orchestrator,
			threshold_days=cfg.renewal_threshold_days,
			batch_size=cfg.renewal_batch_size,
		)

	async def _recover_pending() -> None:
		await orchestrator.recover_pending()

	async def _leader_heartbeat() -> None:
		with open_connection(cfg.db_path) as conn:
			if not try_acquire_leader_lock(conn):
				_log.warning("LEADER lock lost (pid=%d)", os.getpid())

	async def _sqlite_maintenance() -> None:
		await sqlite_maintenance(cfg.db_path)

	async def _sqlite_integrity() -> None:
		await sqlite_integrity_check(cfg.db_path)

	scheduler.add(
		"cert-renewal",
		interval_seconds=cfg.renewal_interval,
		func=_renew_expiring,
		run_on_start=True,
		initial_delay=30.0,  # let recovered sessions settle first
		timeout=600.0,
	)
	# Startup already ran one scan; this catches rows orphaned afterwards
	scheduler.add(
		"pending-recovery",
		interval_seconds=cfg.recovery_interval,
		func=_recover_pending,
		timeout=120.0,
	)
	scheduler.add("leader-heartbeat", interval_seconds=_LEADER_HEARTBEAT_SECONDS, func=_leader_heartbeat)
	scheduler.add(
		"sqlite-maintenance",
		interval_seconds=21600,  # 6 h
		func=_sqlite_maintenance,
		run_on_start=True,
		initial_delay=60.0,
		timeout=60.0,
	)
	scheduler.add(
		"sqlite-integrity",
		interval_seconds=604800,  # weekly
		func=_sqlite_integrity,
		timeout=300.0,
	)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	cfg: Config = app.state.cfg

	# ─── BOOTSTRAP ───────────────────────────────────────────
	with open_connection(cfg.db_path) as conn:
		init_schema(conn)
		is_leader = try_acquire_leader_lock(conn)
	if is_leader:
		_log.info("This worker acquired leader lock (pid=%d)", os.getpid())
	else:
		_log.info("Another worker is leader, skipping recovery and scheduler (pid=%d)", os.getpid())

	owns_issuer = app.state.issuer is None
	issuer = _build_issuer(cfg) if owns_issuer else app.state.issuer
	notifier = Notifier(
		agent_url=cfg.agent_url,
		agent_secret=cfg.agent_secret,
		sandbox=cfg.sandbox_mode,
	)
	orchestrator = LifecycleOrchestrator.from_config(cfg, issuer, notifier=notifier)
	app.state.orchestrator = orchestrator
	app.state.facade = DomainSettingsFacade(orchestrator)

	# ─── RECOVERY + SCHEDULER ─────────────────────────────── (leader only)
	scheduler: Scheduler | None = None
	if is_leader:
		await orchestrator.recover_pending()
		scheduler = Scheduler()
		_register_jobs(scheduler, cfg, orchestrator)
		await scheduler.start()

	app.state.scheduler = scheduler
	app.state.is_leader = is_leader
	_log.info(
		"certflow started (leader=%s, sandbox=%s, pid=%d)",
		is_leader,
		cfg.sandbox_mode,
		os.getpid(),
	)

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	if scheduler:
		await scheduler.stop_graceful(timeout=5.0)
	await orchestrator.shutdown()
	if owns_issuer:
		await issuer.aclose()
	await notifier.aclose()

	if is_leader:
		with open_connection(cfg.db_path) as conn:
			release_leader_lock(conn)

	closed_connections = close_all_connections()
	checkpoint = checkpoint_wal(cfg.db_path, mode="TRUNCATE")
	_log.info(
		"SQLITE_SHUTDOWN connections_closed=%d checkpoint=%s",
		closed_connections,
		checkpoint.as_dict(),
	)
	_log.info("certflow shutdown complete")


def create_app(
	config: Optional[Config] = None,
	*,
	issuer: Optional[ChallengeIssuer] = None,
) -> FastAPI:
	"""Application factory.

	``config`` and ``issuer`` are injectable for embedding and tests; an
	injected issuer is not closed on shutdown.
	"""
	cfg = config or load_config()
	_setup_logging(cfg.log_level)

	app = FastAPI(
		title="certflow",
		description="Certificate lifecycle for custom domains",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	app.state.cfg = cfg
	app.state.db_path = cfg.db_path
	app.state.issuer = issuer

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(RequestIDMiddleware)

	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
	app.add_exception_handler(CertificateError, _certificate_error_handler)

	# ─── ROUTES ──────────────────────────────────────────────
	app.include_router(acme_api.router, prefix="/api/acme")
	app.include_router(domains_api.router, prefix="/api/custom-domains")
	app.include_router(internal_api.router, prefix="/api/internal")
	app.include_router(acme_api.challenge_router)

	return app
