"""Typer sub-applications registered by ``vxrelay.cli.main``."""
