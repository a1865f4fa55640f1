"""Core configuration, logging, telemetry and clock utilities."""
