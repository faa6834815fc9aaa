"""Persistence backends for workspaces and builds."""

from sandcastle.orchestrator.store.base import Repository
from sandcastle.orchestrator.store.sql import SqlRepository

__all__ = ["Repository", "SqlRepository"]
