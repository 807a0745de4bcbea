"""Conversation streaming and history consistency."""
