"""HTTP API for the plan runner."""
