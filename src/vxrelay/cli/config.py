"""
CLI-side settings.

Module-level values overridden by the global ``--host``/``--port``/``--format``
options (or their environment variables) before any command runs.
"""

import os

HOST_ADDRESS: str = os.environ.get("VXRELAY_HOST", "127.0.0.1")
HOST_PORT: int = int(os.environ.get("VXRELAY_PORT", "8380"))

# table | json
OUTPUT_FORMAT: str = "table"

# Seconds to wait on API calls; lifecycle calls can take a while
REQUEST_TIMEOUT: float = 10.0
LIFECYCLE_TIMEOUT: float = 120.0
