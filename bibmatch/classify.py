"""
Anchor/orphan classification of an event's photos.

- An *anchor* has at least one bib number and at least one enrolled face;
  it is a source of truth for propagation.
- An *orphan* has at least one enrolled face but no bib number; it is a
  propagation target.

Photos without any enrolled face belong to neither set.  Both sets come from
predicate queries, so classifying an event with nothing to do stays cheap.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from sqlalchemy.engine import Connection

from .db import Photo, photos_in_event


@dataclass
class Classification:
    anchors: List[Photo] = field(default_factory=list)
    orphans: List[Photo] = field(default_factory=list)


def classify(conn: Connection, event_id: str) -> Classification:
    """Partition the photos of ``event_id`` into anchors and orphans."""
    return Classification(
        anchors=photos_in_event(conn, event_id, has_bib=True, has_face=True),
        orphans=photos_in_event(conn, event_id, has_bib=False, has_face=True),
    )
