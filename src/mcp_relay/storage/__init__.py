"""Persistence for server definitions, profiles and settings."""

from .database import DEFAULT_PROFILE_ID, DefinitionStore, slugify

__all__ = ["DEFAULT_PROFILE_ID", "DefinitionStore", "slugify"]
