"""SQLite storage: ORM tables, engine helpers and migrations."""
