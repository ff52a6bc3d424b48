"""Dual index storage, hybrid search and map projection."""
