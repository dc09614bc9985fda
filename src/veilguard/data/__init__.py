"""Data layer - entity schemas."""
