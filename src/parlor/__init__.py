"""Parlor: one-to-one chat relay with presence, typing and call signaling."""

__version__ = "0.1.0"
