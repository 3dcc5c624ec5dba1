"""HTTP API for the payment orchestrator."""
