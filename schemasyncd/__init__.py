"""
schemasyncd - Runtime daemon for database schema backups.

This package contains the runtime components that manage stored schema
backups: retention cleanup, scheduling and storage monitoring.
"""

__version__ = "0.1.0"
