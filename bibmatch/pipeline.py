"""
High‑level orchestration of the bibmatch identity pipeline.

:class:`IdentityPipeline` ties together the lower‑level components: OCR,
face enrolment, storage, the propagation engine and the clustering
scheduler.  The flow for every uploaded photo is:

1. OCR the photo, narrowing candidates with the event's start list, and
   store each bib number with provenance ``ocr``.
2. Enrol its faces in the face index and record them.
3. Notify the scheduler, which clusters the event once uploads go quiet.

OCR and face enrolment failures are logged per photo and never prevent the
photo from being scheduled for clustering.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine

from .clustering import ClusteringStats, cluster_faces_by_event, event_needs_clustering, get_clustering_status
from .config import PipelineConfig
from .db import (
    BibSource, Photo, create_event, find_photos_by_bib, get_photo, get_photos, get_start_list,
    insert_bib_if_absent, insert_faces, insert_photo, mark_photo_processed
)
from .faces import FaceIndex, get_face_index, make_external_id, parse_external_id
from .images import ImageSource, scan_images
from .ocr import OCRResult, TextExtractor, extract_bib_numbers, get_text_extractor
from .scheduler import ClusteringScheduler

logger = logging.getLogger(__name__)


class IdentityPipeline:
    """Photo processing and clustering for all events of one database.

    Parameters
    ----------
    engine: Engine
        Database engine (see :func:`bibmatch.db.init_db`).
    config: PipelineConfig
        Tuning parameters.
    text_extractor: TextExtractor, optional
        Defaults to the provider selected by ``config``.
    face_index: FaceIndex, optional
        Defaults to the backend selected by ``config``; stays ``None`` when
        face indexing is disabled, which turns clustering into a no‑op.
    scheduler: ClusteringScheduler, optional
        Defaults to a scheduler wired to :meth:`needs_clustering` and
        :meth:`cluster_event`.
    """

    def __init__(self, engine: Engine, config: Optional[PipelineConfig] = None,
                 text_extractor: Optional[TextExtractor] = None,
                 face_index: Optional[FaceIndex] = None,
                 scheduler: Optional[ClusteringScheduler] = None) -> None:
        self.engine = engine
        self.config = config or PipelineConfig()
        self.text_extractor = text_extractor or get_text_extractor(self.config)
        if face_index is None and self.config.face_index_enabled:
            face_index = get_face_index(self.config)
        self.face_index = face_index if self.config.face_index_enabled else None
        self.scheduler = scheduler or ClusteringScheduler(
            self.needs_clustering,
            self.cluster_event,
            quiet_period=self.config.cluster_quiet_period,
        )

    # -- per-photo processing ------------------------------------------------

    def process_photo(self, photo_id: str, image: ImageSource) -> Dict[str, Any]:
        """Run OCR and face enrolment for a stored photo, then schedule clustering.

        Returns a small report with the bib numbers found, the OCR provider
        and the number of faces enrolled.
        """
        with self.engine.connect() as conn:
            photo = get_photo(conn, photo_id)
            if photo is None:
                raise KeyError(f"photo {photo_id} does not exist")
            event_id = photo.event_id
            try:
                start_list = set(get_start_list(conn, event_id))
                ocr = self._run_ocr(conn, photo, image, start_list or None)
                n_faces = self._index_faces(conn, photo, image)
                mark_photo_processed(conn, photo_id, ocr_provider=ocr.provider,
                                     face_indexed=n_faces > 0)
            finally:
                if self.face_index is not None:
                    self.scheduler.schedule_photo_processed(event_id)
        logger.info("Photo %s processed: bibs [%s] via %s, %d face(s)",
                    photo_id, ", ".join(ocr.bib_numbers), ocr.provider, n_faces)
        return {"photo_id": photo_id, "bib_numbers": ocr.bib_numbers,
                "ocr_provider": ocr.provider, "faces": n_faces}

    def _run_ocr(self, conn, photo: Photo, image: ImageSource, valid_bibs) -> OCRResult:
        ocr = extract_bib_numbers(self.text_extractor, image, valid_bibs)
        for number in ocr.bib_numbers:
            insert_bib_if_absent(conn, photo.id, number, ocr.confidence, BibSource.OCR)
        return ocr

    def _index_faces(self, conn, photo: Photo, image: ImageSource) -> int:
        if self.face_index is None:
            return 0
        try:
            faces = self.face_index.index_faces(image, make_external_id(photo.event_id, photo.id))
        except Exception as exc:
            logger.error("Face indexing error for photo %s: %s", photo.id, exc)
            return 0
        return insert_faces(conn, photo.id, [
            {"face_id": f.face_id, "confidence": f.confidence, "bounding_box": f.bounding_box}
            for f in faces
        ])

    def add_photo(self, event_id: str, image: ImageSource, path: Optional[str] = None) -> Dict[str, Any]:
        """Store a new photo for ``event_id`` and process it."""
        with self.engine.connect() as conn:
            create_event(conn, event_id)
            photo_id = insert_photo(conn, event_id, path=path)
        return self.process_photo(photo_id, image)

    def ingest_folder(self, event_id: str, folder: Path, use_phash: bool = False) -> List[Dict[str, Any]]:
        """Add every image under ``folder`` to ``event_id``.

        One unreadable photo is logged and skipped; the rest of the folder is
        still processed.
        """
        reports = []
        for path, _meta in scan_images(folder, use_phash=use_phash):
            try:
                reports.append(self.add_photo(event_id, path, path=str(path)))
            except Exception:
                logger.exception("Could not process %s", path)
        logger.info("Ingested %d photo(s) from %s into event %s", len(reports), folder, event_id)
        return reports

    # -- clustering ------------------------------------------------------------

    def needs_clustering(self, event_id: str) -> bool:
        if self.face_index is None:
            return False
        with self.engine.connect() as conn:
            return event_needs_clustering(conn, event_id)

    def cluster_event(self, event_id: str) -> ClusteringStats:
        with self.engine.connect() as conn:
            return cluster_faces_by_event(
                conn,
                self.face_index,
                event_id,
                similarity_threshold=self.config.cluster_similarity_threshold,
                max_results=self.config.cluster_max_results,
            )

    def clustering_status(self, event_id: str) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            return get_clustering_status(conn, event_id)

    # -- runner-facing lookups -----------------------------------------------

    def add_manual_bib(self, photo_id: str, number: str) -> bool:
        """Tag a photo by hand.  Returns ``False`` if it already had that bib."""
        number = number.strip()
        if not number:
            raise ValueError("bib number is required")
        with self.engine.connect() as conn:
            if get_photo(conn, photo_id) is None:
                raise KeyError(f"photo {photo_id} does not exist")
            return insert_bib_if_absent(conn, photo_id, number, 1.0, BibSource.MANUAL)

    def search_by_bib(self, event_id: str, number: str) -> List[Photo]:
        with self.engine.connect() as conn:
            return find_photos_by_bib(conn, event_id, number.strip())

    def search_by_selfie(self, event_id: str, image: ImageSource) -> List[Photo]:
        """Photos of ``event_id`` containing a face similar to the selfie."""
        if self.face_index is None:
            raise RuntimeError("selfie search requires face indexing")
        matches = self.face_index.search_by_image(
            image,
            max_results=self.config.selfie_max_results,
            threshold=self.config.selfie_similarity_threshold,
        )
        photo_ids = []
        for match in matches:
            parsed = parse_external_id(match.external_id)
            if parsed is not None and parsed[0] == event_id:
                photo_ids.append(parsed[1])
        with self.engine.connect() as conn:
            return get_photos(conn, event_id, photo_ids)

    def close(self) -> None:
        self.scheduler.shutdown()
