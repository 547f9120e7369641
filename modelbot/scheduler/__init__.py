"""Periodic background jobs (health checks, automatic backups)."""
