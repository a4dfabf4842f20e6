from .base import BaseRepository, store_access
from .catalog_repository import CatalogRepository
from .order_repository import OrderRepository
from .reference_repository import ReferenceRepository
from .response_repository import ResponseRepository

__all__ = [
    "BaseRepository",
    "CatalogRepository",
    "OrderRepository",
    "ReferenceRepository",
    "ResponseRepository",
    "store_access",
]
