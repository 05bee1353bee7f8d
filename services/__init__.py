"""Verification services: capture, registry, verifiers, sessions, quota and records."""
