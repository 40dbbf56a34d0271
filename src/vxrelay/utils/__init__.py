"""Logging and shell helpers."""
