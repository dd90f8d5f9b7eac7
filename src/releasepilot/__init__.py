"""ReleasePilot - release and rollout orchestration service.

This package coordinates an application release end-to-end: forking the
release branch, running regression cycles, collecting builds, gating
approvals, and rolling submissions out to the app stores.
"""

__version__ = "0.1.0"
