"""
Database package initialization.

The package follows a modular structure:
- base: declarative base and column mixins
- connection: async engine and session management
- models: ORM models for orders, location samples and delivery photos
"""

__all__ = []
