"""
Database package initialization.

Submodules are imported explicitly where needed to avoid circular imports.
"""

__all__ = []
