"""Convert PostgreSQL base backups into sanitised SQL export archives."""

__version__ = "0.1.0"
