"""Heuristic classification of command output as error text."""

from __future__ import annotations

import re

from sandcastle.orchestrator.models.enums import ErrorSeverity

_ERROR_PATTERNS = (
    "error:",
    "failed",
    "cannot find module",
    "module not found",
    "syntaxerror",
    "typeerror",
    "referenceerror",
    "uncaught",
    "unhandled",
    "exception",
    "fatal",
)

_CRITICAL = re.compile(r"fatal|exception|uncaught|unhandled", re.IGNORECASE)
_HIGH = re.compile(r"error:|failed|cannot", re.IGNORECASE)


def is_error_output(text: str) -> bool:
    """True if *text* contains any of the known error markers (case-insensitive)."""
    lowered = text.lower()
    return any(pattern in lowered for pattern in _ERROR_PATTERNS)


def detect_error_severity(text: str) -> ErrorSeverity:
    if _CRITICAL.search(text):
        return ErrorSeverity.CRITICAL
    if _HIGH.search(text):
        return ErrorSeverity.HIGH
    return ErrorSeverity.MEDIUM
