"""Self-update of the managed tree."""
