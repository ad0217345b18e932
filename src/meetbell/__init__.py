"""meetbell: multi-source meeting reconciliation and durable reminders."""

__version__ = "0.1.0"
