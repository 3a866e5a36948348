"""Core infrastructure: configuration, logging, errors, database and locking."""
