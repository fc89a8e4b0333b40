"""Shared models, configuration and database access for the billing sync service."""
