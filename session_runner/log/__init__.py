"""
Logging module for the session runner.
This module provides functionality to set up console logging and the optional
escalation of fatal session errors to Grafana Loki.
"""

from .setup import setup_logging, ESCALATE

__all__ = ["setup_logging", "ESCALATE"]
