"""
Database package for Sanctionkeeper.

- **db_connection.py**: Single aiosqlite connection with serialised write transactions.
- **db_schema.py**: ``sanctions`` table, indexes and schema version.
"""
