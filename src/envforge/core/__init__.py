"""Envforge core: logging, errors, hashing and configuration."""
