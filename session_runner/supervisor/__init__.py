"""
The Supervisor package.
Runs a single worker session.

This package contains the SessionSupervisor class and its helper modules,
which together handle the listener sockets, launching the worker, routing
messages between the panel node and the worker, and tailing the worker log.
"""
from .supervisor import SessionConfig, SessionSupervisor

__all__ = ['SessionConfig', 'SessionSupervisor']
