"""Operator earnings."""
