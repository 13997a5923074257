"""SQLite persistence for studio tasks."""
