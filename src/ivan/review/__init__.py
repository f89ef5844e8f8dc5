"""Review feedback resolution."""
