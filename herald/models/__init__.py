"""
ORM model package. Import all models here so create_all
can discover every table through the shared Base metadata.
"""
from herald.models.cached_notification import CachedNotification  # noqa: F401
from herald.models.store_state import StoreState  # noqa: F401
