"""Listing reports, moderation actions, appeals and community moderators."""
