"""Domain models for the work queue."""
