"""Workspace and build managers.

Managers own the durable state machines.  They talk to the sandbox
provider and the repository, and raise domain exceptions from
``sandcastle.orchestrator.errors``, never HTTP exceptions -- that
translation is the router's responsibility.
"""
