"""Execution layer: work performed inside running workspace sandboxes.

- **commands**: one-shot commands, code runs, PTY terminals and provider sessions
- **devserver**: dev-server startup with port heuristics and a detached fallback
- **preview**: preview URL discovery and health checks
- **techstack**: manifest-based stack detection and install/build command tables
- **classify**: error detection and severity for command output
"""
