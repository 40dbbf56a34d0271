"""Command-line client for the vxrelay API."""
