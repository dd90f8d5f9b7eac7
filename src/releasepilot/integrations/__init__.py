"""Integration points with external systems.

Outbound webhook notifications and inbound CI/CD callbacks and manual
build uploads.
"""
