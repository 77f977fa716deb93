"""
Face enrolment and similarity search.

Every enrolled face is tagged with an external id ``"<event_id>:<photo_id>"``
so that a search hit can be resolved back to its photo without a database
lookup.  The face collection is shared by all events; callers must filter
matches on the event part of the id.

Two backends implement the :class:`FaceIndex` interface:

- :class:`RekognitionFaceIndex` – an AWS Rekognition face collection
  (``IndexFaces`` / ``SearchFaces`` / ``SearchFacesByImage``).
- :class:`LocalFaceIndex` – InsightFace embeddings kept in a FAISS
  inner‑product index and persisted as Parquet parts.

Similarities are percentages in ``[0, 100]`` for both backends, and the
threshold passed to a search is a hard cutoff.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import faiss
import numpy as np
from botocore.exceptions import ClientError

from .config import PipelineConfig
from .embedders import Embedder, get_embedder
from .embeddings_io import read_collection, write_face_part
from .images import ImageSource, load_image, read_image_bytes

logger = logging.getLogger(__name__)


@dataclass
class IndexedFace:
    face_id: str
    confidence: float
    bounding_box: Dict[str, float]


@dataclass
class FaceMatch:
    external_id: str
    face_id: str
    similarity: float


def make_external_id(event_id: str, photo_id: str) -> str:
    if ":" in event_id or ":" in photo_id:
        raise ValueError("event and photo ids must not contain ':'")
    return f"{event_id}:{photo_id}"


def parse_external_id(external_id: str) -> Optional[Tuple[str, str]]:
    """Split an external id into ``(event_id, photo_id)``, or ``None`` if malformed."""
    parts = external_id.split(":")
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]


class FaceIndex(Protocol):
    def index_faces(self, image: ImageSource, external_id: str) -> List[IndexedFace]:
        ...

    def search_by_face_id(self, face_id: str, max_results: int = 100,
                          threshold: float = 85.0) -> List[FaceMatch]:
        ...

    def search_by_image(self, image: ImageSource, max_results: int = 20,
                        threshold: float = 80.0) -> List[FaceMatch]:
        ...


class RekognitionFaceIndex:
    """Face collection hosted by AWS Rekognition.

    Parameters
    ----------
    collection_id: str
        Rekognition collection shared by all events.  Created on first use.
    client: optional
        A boto3 Rekognition client; one is created for ``region`` if omitted.
    max_faces: int
        Maximum faces enrolled per photo.
    """

    def __init__(self, collection_id: str, client: Any = None, region: str = "eu-west-1",
                 max_faces: int = 10) -> None:
        if client is None:
            import boto3
            client = boto3.client("rekognition", region_name=region)
        self.client = client
        self.collection_id = collection_id
        self.max_faces = max_faces
        self._collection_ready = False
        self._lock = threading.Lock()

    def ensure_collection(self) -> None:
        with self._lock:
            if self._collection_ready:
                return
            try:
                self.client.describe_collection(CollectionId=self.collection_id)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                    raise
                self.client.create_collection(CollectionId=self.collection_id)
                logger.info("Created Rekognition face collection %s", self.collection_id)
            self._collection_ready = True

    def index_faces(self, image: ImageSource, external_id: str) -> List[IndexedFace]:
        self.ensure_collection()
        response = self.client.index_faces(
            CollectionId=self.collection_id,
            Image={"Bytes": read_image_bytes(image)},
            ExternalImageId=external_id,
            DetectionAttributes=["DEFAULT"],
            MaxFaces=self.max_faces,
            QualityFilter="AUTO",
        )
        faces = []
        for record in response.get("FaceRecords", []):
            face = record.get("Face", {})
            box = face.get("BoundingBox", {})
            faces.append(IndexedFace(
                face_id=face.get("FaceId", ""),
                confidence=float(face.get("Confidence", 0.0)),
                bounding_box={
                    "width": float(box.get("Width", 0.0)),
                    "height": float(box.get("Height", 0.0)),
                    "left": float(box.get("Left", 0.0)),
                    "top": float(box.get("Top", 0.0)),
                },
            ))
        return faces

    def search_by_face_id(self, face_id: str, max_results: int = 100,
                          threshold: float = 85.0) -> List[FaceMatch]:
        response = self.client.search_faces(
            CollectionId=self.collection_id,
            FaceId=face_id,
            MaxFaces=max_results,
            FaceMatchThreshold=threshold,
        )
        return self._matches(response, threshold)

    def search_by_image(self, image: ImageSource, max_results: int = 20,
                        threshold: float = 80.0) -> List[FaceMatch]:
        self.ensure_collection()
        try:
            response = self.client.search_faces_by_image(
                CollectionId=self.collection_id,
                Image={"Bytes": read_image_bytes(image)},
                MaxFaces=max_results,
                FaceMatchThreshold=threshold,
            )
        except ClientError as exc:
            # Rekognition reports "no face in the image" as an invalid parameter
            if exc.response.get("Error", {}).get("Code") == "InvalidParameterException":
                return []
            raise
        return self._matches(response, threshold)

    @staticmethod
    def _matches(response: Dict[str, Any], threshold: float) -> List[FaceMatch]:
        matches = []
        for match in response.get("FaceMatches", []):
            face = match.get("Face", {})
            similarity = float(match.get("Similarity", 0.0))
            if similarity < threshold:
                continue
            matches.append(FaceMatch(
                external_id=face.get("ExternalImageId", ""),
                face_id=face.get("FaceId", ""),
                similarity=similarity,
            ))
        return matches


class LocalFaceIndex:
    """Face collection held in a FAISS inner‑product index.

    Embeddings are L2‑normalised, so inner product equals cosine similarity;
    it is reported as a percentage clipped to ``[0, 100]``.  When
    ``collection_dir`` is given, existing parts are loaded on construction
    and every enrolment batch is appended as a new part.
    """

    def __init__(self, embedder: Embedder, collection_dir: Optional[Path] = None,
                 max_faces: int = 10) -> None:
        self.embedder = embedder
        self.collection_dir = Path(collection_dir) if collection_dir is not None else None
        self.max_faces = max_faces
        self._lock = threading.RLock()
        self._index: Optional[faiss.Index] = None
        self._face_ids: List[str] = []
        self._external_ids: List[str] = []
        self._positions: Dict[str, int] = {}
        if self.collection_dir is not None:
            self._load()

    def __len__(self) -> int:
        return len(self._face_ids)

    def _load(self) -> None:
        df = read_collection(self.collection_dir)
        if df.empty:
            return
        vectors = np.vstack(df["embedding"].to_list()).astype(np.float32)
        self._add(df["face_id"].tolist(), df["external_id"].tolist(), vectors)
        logger.info("Loaded %d faces from %s", len(df), self.collection_dir)

    def _add(self, face_ids: List[str], external_ids: List[str], vectors: np.ndarray) -> None:
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        if self._index is None:
            self._index = faiss.IndexFlatIP(vectors.shape[1])
        self._index.add(vectors)
        for face_id, external_id in zip(face_ids, external_ids):
            self._positions[face_id] = len(self._face_ids)
            self._face_ids.append(face_id)
            self._external_ids.append(external_id)

    def index_faces(self, image: ImageSource, external_id: str) -> List[IndexedFace]:
        img = load_image(image)
        height, width = img.shape[:2]
        detected = self.embedder.extract_faces(img)
        detected.sort(key=lambda f: f.get("det_score") or 0.0, reverse=True)
        detected = detected[:self.max_faces]
        if not detected:
            return []
        faces: List[IndexedFace] = []
        records: List[Dict[str, Any]] = []
        for f in detected:
            x1, y1, x2, y2 = f["bbox"]
            face = IndexedFace(
                face_id=uuid.uuid4().hex,
                confidence=float(f.get("det_score") or 0.0) * 100.0,
                bounding_box={
                    "width": (x2 - x1) / width,
                    "height": (y2 - y1) / height,
                    "left": x1 / width,
                    "top": y1 / height,
                },
            )
            faces.append(face)
            records.append({
                "face_id": face.face_id,
                "external_id": external_id,
                "confidence": face.confidence,
                "embedding": np.asarray(f["embedding"], dtype=np.float32).tolist(),
            })
        vectors = np.vstack([np.asarray(f["embedding"], dtype=np.float32) for f in detected])
        with self._lock:
            self._add([f.face_id for f in faces], [external_id] * len(faces), vectors)
            if self.collection_dir is not None:
                write_face_part(self.collection_dir, records)
        return faces

    def search_by_face_id(self, face_id: str, max_results: int = 100,
                          threshold: float = 85.0) -> List[FaceMatch]:
        with self._lock:
            pos = self._positions.get(face_id)
            if pos is None or self._index is None:
                raise KeyError(f"face {face_id} is not in the collection")
            vector = self._index.reconstruct(pos)
            return self._search(vector, max_results, threshold, exclude=face_id)

    def search_by_image(self, image: ImageSource, max_results: int = 20,
                        threshold: float = 80.0) -> List[FaceMatch]:
        detected = self.embedder.extract_faces(load_image(image))
        if not detected:
            return []
        # A selfie is searched by its most confident face
        best = max(detected, key=lambda f: f.get("det_score") or 0.0)
        with self._lock:
            return self._search(np.asarray(best["embedding"], dtype=np.float32), max_results, threshold)

    def _search(self, vector: np.ndarray, max_results: int, threshold: float,
                exclude: Optional[str] = None) -> List[FaceMatch]:
        if self._index is None or self._index.ntotal == 0:
            return []
        k = min(self._index.ntotal, max_results + (1 if exclude else 0))
        sims, indices = self._index.search(np.ascontiguousarray(vector.reshape(1, -1), dtype=np.float32), k)
        matches: List[FaceMatch] = []
        for sim, idx in zip(sims[0], indices[0]):
            if idx < 0:
                continue
            face_id = self._face_ids[idx]
            if face_id == exclude:
                continue
            similarity = min(max(float(sim), 0.0), 1.0) * 100.0
            if similarity < threshold:
                continue
            matches.append(FaceMatch(external_id=self._external_ids[idx], face_id=face_id,
                                     similarity=similarity))
        return matches[:max_results]


def get_face_index(config: PipelineConfig) -> Optional[FaceIndex]:
    """Factory returning the configured face index, or ``None`` when disabled."""
    if not config.face_index_enabled:
        return None
    backend = config.face_backend.lower()
    if backend not in ("auto", "rekognition", "local"):
        raise RuntimeError(f"Unknown face backend {config.face_backend!r}")
    if config.uses_rekognition_faces:
        return RekognitionFaceIndex(
            collection_id=config.face_collection_id,
            region=config.aws_region,
            max_faces=config.index_max_faces,
        )
    embedder = get_embedder(config.model_name, min_face_size=config.min_face_size)
    return LocalFaceIndex(embedder, collection_dir=config.local_collection_dir,
                          max_faces=config.index_max_faces)
