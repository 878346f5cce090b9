"""Domain services: job queue, checkpoints, reconciliation, review, metrics."""
