"""Per-order change event channels."""
