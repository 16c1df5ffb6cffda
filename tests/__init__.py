"""Test the gitmap module."""

DEFAULT_PASSWORD = "secret1"
