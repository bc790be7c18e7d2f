"""Celery tasks that trigger the periodic lifecycle and outbox batches."""
