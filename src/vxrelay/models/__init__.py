"""Enums, overlay addressing, connection codes and API DTOs."""
