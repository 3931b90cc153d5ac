"""
Database Models
"""
from partner_sync.db.models.queue_item import QueueItem, QueueItemStatus

__all__ = ["QueueItem", "QueueItemStatus"]
