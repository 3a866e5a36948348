"""Service layer for the calendar reconciliation cron."""
