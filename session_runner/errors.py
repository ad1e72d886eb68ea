"""
Exception types raised by the session runner.

Only SetupError and LaunchError are fatal for a session; relay and protocol
errors are handled inside the poll loop.
"""


class SessionRunnerError(Exception):
    """Base class for all session runner errors."""


class SetupError(SessionRunnerError):
    """A listener socket could not be created, bound or put into listening mode."""


class LaunchError(SessionRunnerError):
    """The worker could not be spawned or handed to the worker pool."""


class RelayError(SessionRunnerError):
    """A message could not be delivered to the panel node or the worker."""


class RelayTimeoutError(RelayError):
    """No submitter connection arrived before the relay wait elapsed."""


class ProtocolError(SessionRunnerError):
    """A received message is not a valid envelope or carries an unknown source/code."""
