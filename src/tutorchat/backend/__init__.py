"""Client for the tutoring backend."""

from .client import BackendClient, BackendError, SessionNotFound, build_timeout, parse_history

__all__ = ["BackendClient", "BackendError", "SessionNotFound", "build_timeout", "parse_history"]
