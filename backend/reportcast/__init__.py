"""Scheduled-report execution engine."""
