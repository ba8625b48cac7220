"""Gallery record model.

A ``GalleryRecord`` is the persisted form of an enrolled embedding. Records
are immutable: every mutation goes through a transform that returns a new
record with ``version`` incremented by one and ``updated_at`` refreshed,
leaving ``created_at`` untouched.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional

import numpy as np

from ..embedding import Embedding, VECTOR_DTYPE, decode_vector

# Rough per-record overhead of the scalar columns, in bytes
RECORD_OVERHEAD_BYTES = 64


@dataclass(frozen=True)
class GalleryRecord:
    """Represents an enrolled identity in the gallery."""

    id: Optional[int]
    identity: str
    vector_data: bytes
    dimension: int
    created_at: datetime
    updated_at: datetime
    quality: Optional[float] = None
    remarks: Optional[str] = None
    enabled: bool = True
    version: int = 1
    attachment: Optional[bytes] = None

    @classmethod
    def from_embedding(
        cls,
        embedding: Embedding,
        remarks: Optional[str] = None,
        attachment: Optional[bytes] = None,
        enabled: bool = True,
        now: Optional[datetime] = None,
    ) -> "GalleryRecord":
        """Create an unsaved record (``id`` is None) from an embedding."""
        now = now or datetime.now()
        return cls(
            id=None,
            identity=embedding.identity,
            vector_data=embedding.to_bytes(),
            dimension=embedding.dimension,
            created_at=now,
            updated_at=now,
            quality=embedding.quality,
            remarks=remarks,
            enabled=enabled,
            attachment=attachment,
        )

    def to_embedding(self) -> Embedding:
        return Embedding(
            identity=self.identity,
            values=self.vector,
            quality=self.quality,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @property
    def vector(self) -> np.ndarray:
        return decode_vector(self.vector_data)

    # -------------------------------------------------------------------------
    # Copy-on-write transforms
    # -------------------------------------------------------------------------

    def _bump(self, now: Optional[datetime], **changes: Any) -> "GalleryRecord":
        now = now or datetime.now()
        return replace(
            self,
            updated_at=max(now, self.created_at),
            version=self.version + 1,
            **changes,
        )

    def with_vector(
        self,
        embedding: Embedding,
        now: Optional[datetime] = None,
    ) -> "GalleryRecord":
        """Replace vector and quality (re-enrollment)."""
        return self._bump(
            now,
            vector_data=embedding.to_bytes(),
            dimension=embedding.dimension,
            quality=embedding.quality,
        )

    def with_enabled(self, enabled: bool, now: Optional[datetime] = None) -> "GalleryRecord":
        return self._bump(now, enabled=enabled)

    def with_remarks(self, remarks: Optional[str], now: Optional[datetime] = None) -> "GalleryRecord":
        return self._bump(now, remarks=remarks)

    def with_attachment(
        self,
        attachment: Optional[bytes],
        now: Optional[datetime] = None,
    ) -> "GalleryRecord":
        return self._bump(now, attachment=attachment)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def is_valid(self) -> bool:
        """Check the stored vector is consistent with its declared dimension."""
        return (
            bool(self.identity.strip())
            and self.dimension > 0
            and len(self.vector_data) == self.dimension * VECTOR_DTYPE.itemsize
        )

    @property
    def has_attachment(self) -> bool:
        return bool(self.attachment)

    @property
    def storage_size(self) -> int:
        """Approximate storage footprint in bytes."""
        return (
            len(self.vector_data)
            + len(self.identity.encode("utf-8"))
            + len((self.remarks or "").encode("utf-8"))
            + len(self.attachment or b"")
            + RECORD_OVERHEAD_BYTES
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization (vector omitted)."""
        return {
            "id": self.id,
            "identity": self.identity,
            "dimension": self.dimension,
            "quality": self.quality,
            "remarks": self.remarks,
            "enabled": self.enabled,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "has_attachment": self.has_attachment,
        }

    def __repr__(self) -> str:
        return (
            f"GalleryRecord(id={self.id}, identity={self.identity!r}, "
            f"dimension={self.dimension}, enabled={self.enabled}, version={self.version})"
        )


@dataclass(frozen=True)
class GalleryStats:
    """Aggregate statistics over the gallery."""

    total_count: int
    enabled_count: int
    average_quality: Optional[float]
    earliest: Optional[datetime]
    latest: Optional[datetime]
    dimensions: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_count": self.total_count,
            "enabled_count": self.enabled_count,
            "average_quality": self.average_quality,
            "earliest": self.earliest.isoformat() if self.earliest else None,
            "latest": self.latest.isoformat() if self.latest else None,
            "dimensions": list(self.dimensions),
        }
