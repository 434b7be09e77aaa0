"""Framework adapters for secure transmission."""
