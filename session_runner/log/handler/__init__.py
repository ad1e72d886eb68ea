"""
Logging handlers for the session runner.
"""

from .loki import LokiHandler

__all__ = ["LokiHandler"]
