"""Notification trigger map, outbox and delivery."""
