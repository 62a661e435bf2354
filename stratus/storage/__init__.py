from stratus.storage.sync import Remote, delete, logs, reports, status, transfer

__all__ = ["Remote", "delete", "logs", "reports", "status", "transfer"]
