"""SQLite handles and the conversation store."""
