"""API routers, mounted under ``/api`` by ``vxrelay.api.app``."""
