"""Inbound message types, context formatting and the Discord transport."""
