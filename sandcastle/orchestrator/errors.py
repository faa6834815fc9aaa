"""Domain exceptions raised by the orchestrator.

Managers and services raise these; routers translate them into HTTP
responses.  Each one subclasses the builtin that best describes it so
callers can also catch ``LookupError`` / ``ValueError`` generically.
"""

from __future__ import annotations


class SandcastleError(Exception):
    """Base class for orchestrator errors."""


class NotFoundError(SandcastleError, LookupError):
    """A workspace, build or session does not exist (or is deleted)."""


class ValidationError(SandcastleError, ValueError):
    """Caller input or current state does not allow the operation."""


class ConfigurationError(SandcastleError, RuntimeError):
    """A required collaborator or credential is not configured."""


class ProviderError(SandcastleError, RuntimeError):
    """The sandbox provider rejected or failed a call."""


class SandboxNotFoundError(ProviderError):
    """The provider reports that the sandbox handle no longer exists."""


class BuildCommandError(SandcastleError, RuntimeError):
    """A build step exited non-zero in a way that fails the build."""
