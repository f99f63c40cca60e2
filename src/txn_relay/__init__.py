"""Binlog-to-PostgreSQL relay for charging transaction lifecycles."""

__version__ = "0.1.0"
