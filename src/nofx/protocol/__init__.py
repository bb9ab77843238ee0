"""Entities and on-disk formats."""
