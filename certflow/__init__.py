#!/usr/bin/env python3
#
# certflow/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""certflow – certificate lifecycle orchestration for custom domains."""

from .main import create_app

__all__ = ["create_app"]
