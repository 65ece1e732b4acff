"""Virtual participant pool manager service."""
