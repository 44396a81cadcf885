from .base import BackendError, DataService
from .query import Filter, Query, table
from .rest import RestDataService

__all__ = [
    "BackendError",
    "DataService",
    "Filter",
    "Query",
    "RestDataService",
    "table",
]
