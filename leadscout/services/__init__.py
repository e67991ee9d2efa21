"""Clients for the external collaborators used by enrichment and expansion."""
