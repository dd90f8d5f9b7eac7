"""Release orchestration for ReleasePilot.

Task lifecycle and catalog, regression cycles, the release state machine,
the approval gate, per-release leases and the cron orchestrator that
drives a release through its four stages, plus the global scheduler that
ticks every active release.

Submodules are imported directly, e.g. ``releasepilot.orchestrator.cron``.
"""
