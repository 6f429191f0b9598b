"""Protocols for the collaborators of the execution loop."""
