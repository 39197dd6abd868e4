#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# certflow - certificate lifecycle service
# Local development entry point
#

import os

import uvicorn
from certflow.utils.config import load_config


def _uvicorn_log_config(level: str) -> dict:
	"""Uvicorn dict-config using the same line format as the app loggers."""
	fmt = {"format": "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", "datefmt": "%Y-%m-%d %H:%M:%S"}
	return {
		"version": 1,
		"disable_existing_loggers": False,
		"formatters": {"plain": fmt},
		"handlers": {
			"stderr": {"class": "logging.StreamHandler", "formatter": "plain", "stream": "ext://sys.stderr"},
			"stdout": {"class": "logging.StreamHandler", "formatter": "plain", "stream": "ext://sys.stdout"},
		},
		"loggers": {
			"uvicorn": {"handlers": ["stderr"], "level": level, "propagate": False},
			"uvicorn.error": {"level": level},
			"uvicorn.access": {"handlers": ["stdout"], "level": level, "propagate": False},
		},
	}


if __name__ == "__main__":
	cfg = load_config()

	# The CA fetches HTTP-01 tokens from this process, so listen on all
	# interfaces unless told otherwise
	uvicorn.run(
		"certflow:create_app",
		factory=True,
		host=os.environ.get("CERTFLOW_HOST", "0.0.0.0"),
		port=cfg.port,
		reload=os.environ.get("CERTFLOW_DEV_RELOAD", "").lower() in ("1", "true", "yes"),
		log_config=_uvicorn_log_config(cfg.log_level.upper()),
	)
