"""Sandbox provider interface and the Daytona-backed implementation."""

from sandcastle.orchestrator.provider.base import PtyHandle, SandboxProvider, SandboxSpec

__all__ = ["PtyHandle", "SandboxProvider", "SandboxSpec"]
