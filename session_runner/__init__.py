"""
session_runner package.

Launches one worker process for a test session and relays messages between
the panel node, the worker and the submitter channel until the session ends.
"""

__version__ = "1.0.0"
