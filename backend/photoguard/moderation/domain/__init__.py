"""Moderation domain models, policy and service contracts."""
