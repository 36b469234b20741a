"""SQLite-backed store for jobs, providers and dispatch events."""
