"""Round-up pipeline services."""
