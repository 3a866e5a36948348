"""Pydantic schemas for Mobius."""
