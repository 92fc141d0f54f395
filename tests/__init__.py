"""Quickbook test suite."""
