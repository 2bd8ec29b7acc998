"""Base node types."""
