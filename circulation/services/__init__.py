"""Circulation - Services Package

This package contains service modules for outbound integrations:
- Notification dispatch (persisted inbox and optional webhook)
- HTTP client abstraction
"""
