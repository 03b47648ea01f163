"""Collaborators that talk to the remote source."""
