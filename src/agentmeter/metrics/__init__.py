"""Session correlation, change monitoring, extraction and sync state."""
