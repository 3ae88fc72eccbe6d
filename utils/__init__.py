"""Shared building blocks: configuration, logging, database, messaging, schemas."""
