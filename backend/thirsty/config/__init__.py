"""Service configuration: environment settings."""
