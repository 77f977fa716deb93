"""
Propagation of bib numbers between photos by face similarity.

OCR only finds a bib number when it is visible; a runner photographed from
the side or behind another runner stays untagged.  Clustering closes that
gap: every face on an *anchor* photo (bib known, face enrolled) is searched
in the face index, and each sufficiently similar face that belongs to an
*orphan* photo of the same event receives the anchor's bib numbers.

Searches go from anchors outwards only.  Face searches are billed per call,
so the cost is one search per anchor face rather than one per pair of faces.
Tag writes are insert‑if‑absent keyed on ``(photo_id, number)``, which makes
the outcome independent of the order anchors are processed in and makes a
re-run after a failure safe.
"""

from __future__ import annotations

import datetime as _dt
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.engine import Connection

from .classify import classify
from .db import (
    BibSource, count_photos, get_event, insert_bib_if_absent, latest_photo_activity,
    set_last_clustered, utcnow
)
from .faces import FaceIndex, FaceMatch, parse_external_id

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 85.0
DEFAULT_MAX_RESULTS = 100


@dataclass
class ClusteringStats:
    """Counters of one clustering run, reported to operators.

    ``bibs_assigned`` counts tags actually created; re-asserting an existing
    ``(photo, bib)`` pair is not counted.  ``photos_linked`` counts distinct
    ``(orphan, anchor bib set)`` links.
    """
    anchors: int = 0
    orphans: int = 0
    faces_searched: int = 0
    bibs_assigned: int = 0
    photos_linked: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _resolve_orphan(match: FaceMatch, event_id: str, anchor_id: str,
                    orphan_face_to_photo: Dict[str, str]) -> Optional[str]:
    """Return the orphan photo a match points to, or ``None`` to discard it.

    Matches from other events, matches back to the anchor itself and matches
    that are not a known orphan face (another anchor, or a face removed from
    the database but still in the index) are discarded silently.
    """
    parsed = parse_external_id(match.external_id)
    if parsed is None:
        return None
    match_event_id, match_photo_id = parsed
    if match_event_id != event_id:
        return None
    if match_photo_id == anchor_id:
        return None
    orphan_id = orphan_face_to_photo.get(match.face_id)
    if orphan_id is None or orphan_id != match_photo_id:
        return None
    return orphan_id


def cluster_faces_by_event(conn: Connection, face_index: Optional[FaceIndex], event_id: str,
                           similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
                           max_results: int = DEFAULT_MAX_RESULTS,
                           now: Optional[_dt.datetime] = None) -> ClusteringStats:
    """Propagate bib numbers from anchor photos to orphan photos of one event.

    Parameters
    ----------
    conn: Connection
        Open database connection.
    face_index: FaceIndex or None
        Index used for similarity searches.  ``None`` means face indexing is
        disabled and the run does nothing.
    event_id: str
        Event to cluster.  Only photos of this event are ever tagged.
    similarity_threshold: float
        Minimum similarity (percent) of a match.  Kept high on purpose: a
        wrong bib is worse than a missing one.
    max_results: int
        Maximum matches requested per face search.
    now: datetime, optional
        Timestamp recorded as the event's ``last_clustered_at``.  Defaults to
        the time the run starts, before photos are classified, so a photo
        processed while the run is in progress still counts as new.

    Returns
    -------
    ClusteringStats
        Counters and the error messages of failed face searches.  A failed
        search does not stop the run.
    """
    stats = ClusteringStats()
    if face_index is None:
        logger.info("Face indexing not enabled, skipping clustering of event %s", event_id)
        return stats

    started_at = now or utcnow()
    classification = classify(conn, event_id)
    stats.anchors = len(classification.anchors)
    stats.orphans = len(classification.orphans)
    logger.info("Event %s: %d anchor photos, %d orphan photos", event_id, stats.anchors, stats.orphans)
    if not classification.orphans:
        return stats

    orphan_face_to_photo: Dict[str, str] = {}
    for photo in classification.orphans:
        for face in photo.faces:
            orphan_face_to_photo[face.face_id] = photo.id

    linked: Set[Tuple[str, Tuple[str, ...]]] = set()
    for anchor in classification.anchors:
        bib_numbers = tuple(anchor.bib_numbers)
        for face in anchor.faces:
            stats.faces_searched += 1
            try:
                matches = face_index.search_by_face_id(face.face_id, max_results, similarity_threshold)
            except Exception as exc:
                message = f"Error searching face {face.face_id}: {exc}"
                logger.warning("Event %s: %s", event_id, message)
                stats.errors.append(message)
                continue

            for match in matches:
                if match.similarity < similarity_threshold:
                    continue
                orphan_id = _resolve_orphan(match, event_id, anchor.id, orphan_face_to_photo)
                if orphan_id is None:
                    continue
                key = (orphan_id, bib_numbers)
                if key in linked:
                    continue
                confidence = min(max(match.similarity / 100.0, 0.0), 1.0)
                for number in bib_numbers:
                    if insert_bib_if_absent(conn, orphan_id, number, confidence, BibSource.FACE_PROPAGATION):
                        stats.bibs_assigned += 1
                        logger.info("Linked photo %s to bib #%s (similarity %.1f%%)",
                                    orphan_id, number, match.similarity)
                linked.add(key)
                stats.photos_linked += 1

    set_last_clustered(conn, event_id, started_at)
    logger.info("Event %s clustered: linked %d photos, assigned %d bibs, %d errors",
                event_id, stats.photos_linked, stats.bibs_assigned, len(stats.errors))
    return stats


def event_needs_clustering(conn: Connection, event_id: str) -> bool:
    """Whether a clustering run could do useful work for ``event_id``.

    True when the event has at least one orphan photo and either was never
    clustered or the last run started before its most recent photo was
    uploaded or processed.
    """
    event = get_event(conn, event_id)
    if event is None:
        return False
    if count_photos(conn, event_id, has_bib=False, has_face=True) == 0:
        return False
    latest = latest_photo_activity(conn, event_id)
    if latest is None:
        return False
    last = event["last_clustered_at"]
    return last is None or last < latest


def get_clustering_status(conn: Connection, event_id: str) -> Dict[str, Any]:
    """Summary of an event's tagging coverage for operators."""
    event = get_event(conn, event_id)
    return {
        "event_id": event_id,
        "total_photos": count_photos(conn, event_id),
        "photos_with_bibs": count_photos(conn, event_id, has_bib=True),
        "photos_with_faces": count_photos(conn, event_id, has_face=True),
        "orphan_photos": count_photos(conn, event_id, has_bib=False, has_face=True),
        "last_clustered_at": event["last_clustered_at"] if event else None,
        "needs_clustering": event_needs_clustering(conn, event_id),
    }
