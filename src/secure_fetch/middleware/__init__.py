"""Transport adapters for secure_fetch."""
