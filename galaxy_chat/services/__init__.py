"""Collaborators the chat core talks to through narrow interfaces."""
