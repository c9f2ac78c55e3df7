"""SQLite storage plumbing shared by repositories."""
