"""
Tunnel persistence (peewee + SQLite).

    from vxrelay.db import Tunnel, TunnelRecord, initialize_database
"""

from vxrelay.db.base import BaseModel, close_database, db, initialize_database
from vxrelay.db.tunnel import Tunnel, TunnelRecord

__all__ = [
    "db",
    "BaseModel",
    "initialize_database",
    "close_database",
    "Tunnel",
    "TunnelRecord",
]
