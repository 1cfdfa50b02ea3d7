"""Shared infrastructure: logging, errors, database, secret storage."""
