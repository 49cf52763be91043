"""SQLite persistence for runs, tasks, events and stream messages."""
