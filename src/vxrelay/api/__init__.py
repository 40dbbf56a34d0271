"""HTTP API server exposing the tunnel orchestrator."""
