"""
Xray-compatible configuration for a tunnel's SOCKS5 daemon.

Relay: SOCKS5 inbound on the relay's overlay address, freedom outbound.
Origin: SOCKS5 inbound on a public address, chained to a SOCKS5 outbound at
the relay's overlay address so all client traffic exits through the relay.
"""

INBOUND_TAG = "socks-in"
RELAY_OUTBOUND_TAG = "relay-proxy"
DIRECT_OUTBOUND_TAG = "direct"


def _socks_inbound(listen: str, port: int) -> dict:
    return {
        "tag": INBOUND_TAG,
        "listen": listen,
        "port": port,
        "protocol": "socks",
        "settings": {"auth": "noauth", "udp": True},
    }


def _direct_outbound() -> dict:
    return {"tag": DIRECT_OUTBOUND_TAG, "protocol": "freedom", "settings": {}}


def _route_all(outbound_tag: str) -> dict:
    return {
        "rules": [
            {
                "type": "field",
                "inboundTag": [INBOUND_TAG],
                "outboundTag": outbound_tag,
            }
        ]
    }


def relay_proxy_config(listen: str, port: int, log_level: str = "info") -> dict:
    """Relay side: accept on the overlay address, egress directly."""
    return {
        "log": {"loglevel": log_level},
        "inbounds": [_socks_inbound(listen, port)],
        "outbounds": [_direct_outbound()],
        "routing": _route_all(DIRECT_OUTBOUND_TAG),
    }


def origin_proxy_config(
    listen: str,
    port: int,
    relay_overlay_address: str,
    relay_port: int,
    log_level: str = "info",
) -> dict:
    """Origin side: accept clients, forward everything to the relay's proxy."""
    relay_outbound = {
        "tag": RELAY_OUTBOUND_TAG,
        "protocol": "socks",
        "settings": {
            "servers": [{"address": relay_overlay_address, "port": relay_port}]
        },
    }
    return {
        "log": {"loglevel": log_level},
        "inbounds": [_socks_inbound(listen, port)],
        # First outbound is the default; direct stays available as a tag only
        "outbounds": [relay_outbound, _direct_outbound()],
        "routing": _route_all(RELAY_OUTBOUND_TAG),
    }


def listen_address(config: dict) -> tuple[str, int]:
    """(address, port) of the SOCKS5 inbound in a generated config."""
    inbound = config["inbounds"][0]
    return inbound["listen"], inbound["port"]
