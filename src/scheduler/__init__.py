"""Celery scheduling for queue draining and verification sweeps."""
