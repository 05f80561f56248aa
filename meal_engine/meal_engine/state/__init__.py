"""Persistence layer: ORM tables, repositories, engine/session helpers."""
