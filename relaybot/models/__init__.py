"""Completion client, model metadata cache and content translation."""
