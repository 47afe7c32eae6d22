"""Pydantic schemas for the Parlor API and socket events."""
