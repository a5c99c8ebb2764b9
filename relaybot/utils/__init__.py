"""Configuration, paths and media helpers."""
