"""SQL-backed document store (SQLAlchemy async)."""
