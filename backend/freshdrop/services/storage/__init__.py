"""Step evidence storage."""
