"""
vxrelay: VXLAN + SOCKS5 tunnel lifecycle orchestrator.

Pairs an origin host with a relay host over a point-to-point VXLAN overlay
and runs a SOCKS5 proxy daemon on each end, so clients of the origin egress
through the relay's public address.
"""

__version__ = "0.1.0"
