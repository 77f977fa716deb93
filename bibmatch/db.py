"""
Database layer for the bibmatch identity pipeline.

A small set of normalized tables records events, their photos, the bib
numbers attached to each photo and the faces enrolled in the face index.
The pipeline only needs a handful of operations on them: predicate reads
("photos of this event that have a bib / a face"), an insert‑if‑absent for
bib tags and the per‑event clustering watermark.

The tables are created automatically if they do not exist when connecting.
All interactions are implemented using SQLAlchemy Core.  Functions take an
open :class:`~sqlalchemy.engine.Connection` and commit their own writes, so
callers should use ``engine.connect()`` rather than ``engine.begin()``.
"""

from __future__ import annotations

import datetime as _dt
import enum
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import (
    Table, Column, Integer, String, Float, DateTime, Boolean, JSON, MetaData,
    ForeignKey, UniqueConstraint, create_engine, select, insert, update, delete, func
)
from sqlalchemy.engine import Engine, Connection
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool


class BibSource(str, enum.Enum):
    """How a bib number was first attached to a photo."""
    OCR = "ocr"
    FACE_PROPAGATION = "face_propagation"
    MANUAL = "manual"


@dataclass
class BibTag:
    photo_id: str
    number: str
    confidence: float
    source: BibSource


@dataclass
class FaceDescriptor:
    photo_id: str
    face_id: str
    confidence: float = 0.0
    bounding_box: Optional[Dict[str, float]] = None


@dataclass
class Photo:
    id: str
    event_id: str
    path: Optional[str]
    created_at: _dt.datetime
    bibs: List[BibTag] = field(default_factory=list)
    faces: List[FaceDescriptor] = field(default_factory=list)

    @property
    def bib_numbers(self) -> List[str]:
        return [b.number for b in self.bibs]


def utcnow() -> _dt.datetime:
    """Naive UTC timestamp, the form stored in ``DateTime`` columns."""
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    Table(
        "events", metadata,
        Column("id", String, primary_key=True),
        Column("name", String, nullable=True),
        Column("created_at", DateTime, nullable=False),
        # Start time of the last completed propagation run for this event
        Column("last_clustered_at", DateTime, nullable=True),
    )
    Table(
        "photos", metadata,
        Column("id", String, primary_key=True),
        Column("event_id", String, ForeignKey("events.id"), nullable=False, index=True),
        Column("path", String, nullable=True),
        Column("created_at", DateTime, nullable=False),
        Column("processed_at", DateTime, nullable=True),
        Column("ocr_provider", String, nullable=True),
        Column("face_indexed", Boolean, nullable=False, default=False),
    )
    Table(
        "bib_numbers", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("photo_id", String, ForeignKey("photos.id"), nullable=False, index=True),
        Column("number", String, nullable=False),
        Column("confidence", Float, nullable=False),
        Column("source", String, nullable=False),
        Column("created_at", DateTime, nullable=False),
        UniqueConstraint("photo_id", "number", name="uq_bib_numbers_photo_number"),
    )
    Table(
        "photo_faces", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("photo_id", String, ForeignKey("photos.id"), nullable=False, index=True),
        Column("face_id", String, nullable=False, unique=True),
        Column("confidence", Float, nullable=True),
        Column("bounding_box", JSON, nullable=True),
    )
    Table(
        "start_list_entries", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("event_id", String, ForeignKey("events.id"), nullable=False),
        Column("bib_number", String, nullable=False),
        Column("runner_name", String, nullable=True),
        UniqueConstraint("event_id", "bib_number", name="uq_start_list_event_bib"),
    )
    return metadata


_METADATA = _make_metadata()
events_table = _METADATA.tables["events"]
photos_table = _METADATA.tables["photos"]
bibs_table = _METADATA.tables["bib_numbers"]
faces_table = _METADATA.tables["photo_faces"]
start_list_table = _METADATA.tables["start_list_entries"]


def init_db(db: Union[str, Path]) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db: str or Path
        Either a SQLAlchemy URL or the path of a SQLite database file.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    url = str(db)
    if "://" not in url:
        url = f"sqlite:///{url}"
    kwargs: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        # Clustering runs on scheduler threads
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    _METADATA.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Events, photos and start lists
# ---------------------------------------------------------------------------


def create_event(conn: Connection, event_id: str, name: Optional[str] = None) -> str:
    """Insert an event row if it does not exist yet and return its ID."""
    if get_event(conn, event_id) is None:
        conn.execute(insert(events_table).values(id=event_id, name=name, created_at=utcnow()))
        conn.commit()
    return event_id


def get_event(conn: Connection, event_id: str) -> Optional[Dict[str, Any]]:
    """Retrieve a single event by ID as a dictionary, or ``None`` if not found."""
    row = conn.execute(select(events_table).where(events_table.c.id == event_id)).mappings().first()
    return dict(row) if row else None


def insert_photo(conn: Connection, event_id: str, path: Optional[str] = None,
                 photo_id: Optional[str] = None,
                 created_at: Optional[_dt.datetime] = None) -> str:
    """Insert a new photo for an event and return its ID."""
    photo_id = photo_id or uuid.uuid4().hex
    conn.execute(
        insert(photos_table).values(
            id=photo_id,
            event_id=event_id,
            path=path,
            created_at=created_at or utcnow(),
            face_indexed=False,
        )
    )
    conn.commit()
    return photo_id


def get_photo(conn: Connection, photo_id: str) -> Optional[Photo]:
    row = conn.execute(select(photos_table).where(photos_table.c.id == photo_id)).mappings().first()
    if row is None:
        return None
    return _load_photos(conn, [row])[0]


def mark_photo_processed(conn: Connection, photo_id: str, ocr_provider: Optional[str] = None,
                         face_indexed: Optional[bool] = None) -> None:
    values: Dict[str, Any] = {"processed_at": utcnow()}
    if ocr_provider is not None:
        values["ocr_provider"] = ocr_provider
    if face_indexed is not None:
        values["face_indexed"] = face_indexed
    conn.execute(update(photos_table).where(photos_table.c.id == photo_id).values(**values))
    conn.commit()


def add_start_list(conn: Connection, event_id: str, bib_numbers: Iterable[str]) -> int:
    """Add bib numbers to an event's start list, ignoring ones already present.

    Returns the number of new entries.
    """
    existing = set(get_start_list(conn, event_id))
    rows = []
    for number in bib_numbers:
        number = str(number).strip()
        if number and number not in existing:
            existing.add(number)
            rows.append({"event_id": event_id, "bib_number": number})
    if rows:
        conn.execute(insert(start_list_table), rows)
        conn.commit()
    return len(rows)


def get_start_list(conn: Connection, event_id: str) -> List[str]:
    rows = conn.execute(
        select(start_list_table.c.bib_number).where(start_list_table.c.event_id == event_id)
    ).scalars().all()
    return list(rows)


# ---------------------------------------------------------------------------
# Faces and bib numbers
# ---------------------------------------------------------------------------


def insert_faces(conn: Connection, photo_id: str, faces: Iterable[Dict[str, Any]]) -> int:
    """Record faces enrolled for a photo.

    Each record must include ``face_id`` and may include ``confidence`` and
    ``bounding_box``.  Returns the number of rows inserted.
    """
    rows = [
        {
            "photo_id": photo_id,
            "face_id": f["face_id"],
            "confidence": f.get("confidence"),
            "bounding_box": f.get("bounding_box"),
        }
        for f in faces
    ]
    if not rows:
        return 0
    conn.execute(insert(faces_table), rows)
    conn.commit()
    return len(rows)


def insert_bib_if_absent(conn: Connection, photo_id: str, number: str, confidence: float,
                         source: Union[BibSource, str]) -> bool:
    """Attach a bib number to a photo unless the pair already exists.

    The first writer of a ``(photo_id, number)`` pair wins: an existing row
    is never updated, and a duplicate (including one lost to a concurrent
    writer) is a successful no-op.

    Returns
    -------
    bool
        ``True`` if a row was created, ``False`` if the pair already existed.
    """
    values = {
        "photo_id": photo_id,
        "number": number,
        "confidence": float(confidence),
        "source": BibSource(source).value,
        "created_at": utcnow(),
    }
    dialect = conn.dialect.name
    if dialect in ("sqlite", "postgresql"):
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        stmt = dialect_insert(bibs_table).values(**values).on_conflict_do_nothing(
            index_elements=["photo_id", "number"]
        )
        result = conn.execute(stmt)
        conn.commit()
        return result.rowcount == 1
    try:
        conn.execute(insert(bibs_table).values(**values))
        conn.commit()
    except IntegrityError:
        if conn.in_transaction():
            conn.rollback()
        return False
    return True


def remove_bib(conn: Connection, photo_id: str, number: str) -> bool:
    """Delete a bib number from a photo.  Returns whether a row was removed."""
    result = conn.execute(
        delete(bibs_table).where(bibs_table.c.photo_id == photo_id, bibs_table.c.number == number)
    )
    conn.commit()
    return result.rowcount > 0


def get_bibs(conn: Connection, photo_id: str) -> List[BibTag]:
    rows = conn.execute(
        select(bibs_table).where(bibs_table.c.photo_id == photo_id).order_by(bibs_table.c.id)
    ).mappings().all()
    return [_bib_from_row(r) for r in rows]


def _bib_from_row(row: Any) -> BibTag:
    return BibTag(
        photo_id=row["photo_id"],
        number=row["number"],
        confidence=float(row["confidence"]),
        source=BibSource(row["source"]),
    )


# ---------------------------------------------------------------------------
# Predicate reads used by the classifier and the clustering predicate
# ---------------------------------------------------------------------------


def _predicate_query(columns: Any, event_id: str, has_bib: Optional[bool], has_face: Optional[bool]):
    query = select(columns).where(photos_table.c.event_id == event_id)
    if has_bib is not None:
        bib_exists = select(bibs_table.c.id).where(bibs_table.c.photo_id == photos_table.c.id).exists()
        query = query.where(bib_exists if has_bib else ~bib_exists)
    if has_face is not None:
        face_exists = select(faces_table.c.id).where(faces_table.c.photo_id == photos_table.c.id).exists()
        query = query.where(face_exists if has_face else ~face_exists)
    return query


def photos_in_event(conn: Connection, event_id: str, has_bib: Optional[bool] = None,
                    has_face: Optional[bool] = None) -> List[Photo]:
    """Return the photos of an event filtered on having bib numbers / faces.

    ``None`` leaves the corresponding predicate unconstrained.  Photos are
    returned with their bib tags and face descriptors loaded.
    """
    query = _predicate_query(photos_table, event_id, has_bib, has_face)
    rows = conn.execute(query.order_by(photos_table.c.created_at, photos_table.c.id)).mappings().all()
    return _load_photos(conn, rows)


def count_photos(conn: Connection, event_id: str, has_bib: Optional[bool] = None,
                 has_face: Optional[bool] = None) -> int:
    query = _predicate_query(func.count(), event_id, has_bib, has_face).select_from(photos_table)
    return int(conn.execute(query).scalar_one())


def _load_photos(conn: Connection, rows: List[Any]) -> List[Photo]:
    photos = [
        Photo(id=r["id"], event_id=r["event_id"], path=r["path"], created_at=r["created_at"])
        for r in rows
    ]
    if not photos:
        return photos
    by_id = {p.id: p for p in photos}
    ids = list(by_id)
    bib_rows = conn.execute(
        select(bibs_table).where(bibs_table.c.photo_id.in_(ids)).order_by(bibs_table.c.id)
    ).mappings().all()
    for r in bib_rows:
        by_id[r["photo_id"]].bibs.append(_bib_from_row(r))
    face_rows = conn.execute(
        select(faces_table).where(faces_table.c.photo_id.in_(ids)).order_by(faces_table.c.id)
    ).mappings().all()
    for r in face_rows:
        by_id[r["photo_id"]].faces.append(
            FaceDescriptor(
                photo_id=r["photo_id"],
                face_id=r["face_id"],
                confidence=float(r["confidence"] or 0.0),
                bounding_box=r["bounding_box"],
            )
        )
    return photos


def latest_photo_activity(conn: Connection, event_id: str) -> Optional[_dt.datetime]:
    """Most recent upload or processing time of any photo in the event."""
    activity = func.coalesce(photos_table.c.processed_at, photos_table.c.created_at)
    return conn.execute(
        select(func.max(activity)).where(photos_table.c.event_id == event_id)
    ).scalar_one_or_none()


def set_last_clustered(conn: Connection, event_id: str, when: _dt.datetime) -> None:
    conn.execute(update(events_table).where(events_table.c.id == event_id).values(last_clustered_at=when))
    conn.commit()


def find_photos_by_bib(conn: Connection, event_id: str, number: str) -> List[Photo]:
    """Return the photos of an event tagged with ``number``, whatever the source."""
    query = (
        select(photos_table)
        .join(bibs_table, bibs_table.c.photo_id == photos_table.c.id)
        .where(photos_table.c.event_id == event_id, bibs_table.c.number == number)
        .order_by(photos_table.c.created_at, photos_table.c.id)
    )
    return _load_photos(conn, conn.execute(query).mappings().all())


def get_photos(conn: Connection, event_id: str, photo_ids: Iterable[str]) -> List[Photo]:
    """Return the photos with the given IDs that belong to ``event_id``."""
    ids = list(dict.fromkeys(photo_ids))
    if not ids:
        return []
    query = select(photos_table).where(photos_table.c.event_id == event_id, photos_table.c.id.in_(ids))
    return _load_photos(conn, conn.execute(query).mappings().all())
