"""Periodic maintenance jobs for moderation storage."""
