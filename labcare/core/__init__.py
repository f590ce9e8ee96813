"""Collaborator interfaces, adapters and the workflow error taxonomy."""
