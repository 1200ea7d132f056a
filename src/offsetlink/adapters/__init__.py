"""Adapters — contracts for external collaborators and in-memory stand-ins."""
