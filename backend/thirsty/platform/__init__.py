"""Cross-cutting platform utilities."""
