"""Logging and metrics for TutorChat."""
