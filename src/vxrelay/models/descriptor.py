"""
Transfer descriptor: the connection code a relay hands to its origin.

A descriptor is a value copy of the relay tunnel's networking parameters.
It is encoded as base64(JSON) so it can be pasted between hosts, and decoding
validates every required field before anything is materialized.
"""

from __future__ import annotations

import base64
import binascii
import ipaddress
import json

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from vxrelay.errors import TunnelValidationError
from vxrelay.models.overlay_subnet import same_block

DESCRIPTOR_VERSION = "1"


class TransferDescriptor(BaseModel):
    """Networking parameters needed to build the origin end of a tunnel."""

    version: str = DESCRIPTOR_VERSION
    label: str = Field(..., min_length=1, max_length=128)
    relay_address: str
    origin_address: str | None = None
    tunnel_port: int = Field(..., ge=1, le=65535)
    proxy_port: int = Field(..., ge=1, le=65535)
    vni: int = Field(..., ge=1, le=16777215)
    origin_overlay_address: str
    relay_overlay_address: str

    @field_validator(
        "relay_address",
        "origin_address",
        "origin_overlay_address",
        "relay_overlay_address",
    )
    @classmethod
    def _check_ipv4(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return str(ipaddress.IPv4Address(value))

    @model_validator(mode="after")
    def _check_overlay_pair(self) -> TransferDescriptor:
        if self.version != DESCRIPTOR_VERSION:
            raise ValueError(f"unsupported descriptor version {self.version!r}")
        if self.origin_overlay_address == self.relay_overlay_address:
            raise ValueError("overlay addresses must differ")
        if not same_block(self.origin_overlay_address, self.relay_overlay_address):
            raise ValueError("overlay addresses must share a /24")
        return self

    def encode(self) -> str:
        """Encode to a base64 connection code."""
        payload = self.model_dump_json(exclude_none=True)
        return base64.b64encode(payload.encode()).decode()

    @classmethod
    def decode(cls, code: str) -> TransferDescriptor:
        """
        Decode and validate a connection code.

        Raises:
            TunnelValidationError: If the code is not valid base64/JSON or any
                required field is missing or malformed.
        """
        if not code or not code.strip():
            raise TunnelValidationError("Empty transfer descriptor")

        try:
            raw = base64.b64decode(code.strip(), validate=True)
            data = json.loads(raw.decode())
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TunnelValidationError(f"Malformed transfer descriptor: {e}")

        if not isinstance(data, dict):
            raise TunnelValidationError("Malformed transfer descriptor: not an object")

        return cls.build(**data)

    @classmethod
    def build(cls, **fields) -> TransferDescriptor:
        """
        Validate descriptor fields.

        Raises:
            TunnelValidationError: A field is missing or malformed.
        """
        try:
            return cls.model_validate(fields)
        except ValidationError as e:
            problems = "; ".join(
                f"{_field_path(err)}: {err['msg']}" for err in e.errors()
            )
            raise TunnelValidationError(f"Invalid transfer descriptor: {problems}")


def _field_path(err: dict) -> str:
    return ".".join(str(p) for p in err["loc"]) or "descriptor"
