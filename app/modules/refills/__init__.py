"""Medication refill queue: scheduling, checkpoints, pharmacy handoff."""
