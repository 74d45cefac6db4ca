#!/usr/bin/env python3
"""
HvBackup CLI package.
"""

from .parsers import build_parser, main
from .utils import console, load_engine_config

__all__ = ["build_parser", "main", "console", "load_engine_config"]
