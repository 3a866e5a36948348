"""Mobius fleet calendar reconciliation service."""
