"""HTTP surface for Review Forge."""
