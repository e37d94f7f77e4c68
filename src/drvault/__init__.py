"""
drvault - Backup and Disaster Recovery Orchestration

Scheduled full and incremental backups, integrity verification, restore-test
validation, cross-region replication with consistency reconciliation, and
retention management for a relational database and a file store.
"""

__version__ = "1.0.0"
