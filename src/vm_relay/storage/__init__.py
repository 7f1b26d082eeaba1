"""SQLite storage plumbing shared by the task store and relay buffer."""
