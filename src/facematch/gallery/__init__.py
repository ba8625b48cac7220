"""Gallery of enrolled identities.

Contains:
- GalleryRecord: Immutable persisted record
- GalleryBackend / SqliteGalleryBackend: Blocking storage
- GalleryStore: Async, capacity-bounded, observable store
"""

from .records import GalleryRecord, GalleryStats
from .backend import GalleryBackend, SqliteGalleryBackend
from .store import GalleryStore

__all__ = [
    "GalleryRecord",
    "GalleryStats",
    "GalleryBackend",
    "SqliteGalleryBackend",
    "GalleryStore",
]
