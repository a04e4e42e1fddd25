"""ORM models exposed by the IndexSync application."""
from .index_config import IndexConfig
from .product import Product
from .queue_item import QueueItem
from .sync_log import SyncLogEntry

__all__ = ["IndexConfig", "Product", "QueueItem", "SyncLogEntry"]
