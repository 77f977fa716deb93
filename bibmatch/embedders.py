"""
Face embedding model wrapper for the local face index.

This module hides the details of loading and running InsightFace.  The
:class:`Embedder` interface exposes a single method :meth:`extract_faces`
which takes a BGR image and returns a list of face records with bounding
boxes, detection scores and L2‑normalised embeddings.  Any object with the
same method can be handed to :class:`bibmatch.faces.LocalFaceIndex`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import numpy as np

logger = logging.getLogger(__name__)


class Embedder:
    """Base class for all embedders."""

    def extract_faces(self, img: np.ndarray) -> List[Dict[str, Any]]:
        """Detect and embed faces from a BGR image.

        Subclasses must implement this method and return a list of dicts
        containing at least ``embedding``, ``bbox`` and ``det_score``.
        """
        raise NotImplementedError


class InsightFaceEmbedder(Embedder):
    """Wrapper around InsightFace ``FaceAnalysis`` API.

    Parameters
    ----------
    model_name: str
        Name of the model package to load from InsightFace (``buffalo_l``
        by default).
    min_face_size: int
        Minimum side length (in pixels) of detected faces.  Smaller faces,
        typically runners far in the background, are filtered out.
    use_gpu: bool
        Whether to use CUDA if available; falls back to CPU otherwise.
    """
    def __init__(self, model_name: str = "buffalo_l", min_face_size: int = 40, use_gpu: bool = False) -> None:
        from insightface.app import FaceAnalysis
        providers = ["CPUExecutionProvider"]
        if use_gpu:
            import onnxruntime
            if "CUDAExecutionProvider" in onnxruntime.get_available_providers():
                providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
            else:
                logger.warning("CUDA not available to ONNX Runtime, using CPU for %s", model_name)
        self.app = FaceAnalysis(name=model_name, providers=providers)
        self.app.prepare(ctx_id=0 if use_gpu else -1, det_size=(640, 640))
        self.min_face_size = min_face_size

    def extract_faces(self, img: np.ndarray) -> List[Dict[str, Any]]:
        faces = self.app.get(img)
        results: List[Dict[str, Any]] = []
        for f in faces:
            x1, y1, x2, y2 = f.bbox.astype(float)
            if min(x2 - x1, y2 - y1) < self.min_face_size:
                continue
            embedding = f.embedding.astype(np.float32)
            embedding /= np.linalg.norm(embedding) + 1e-9
            results.append({
                "bbox": [float(x1), float(y1), float(x2), float(y2)],
                "embedding": embedding,
                "det_score": float(f.det_score) if hasattr(f, "det_score") else None,
            })
        return results


def get_embedder(model_name: str, min_face_size: int = 40, use_gpu: bool = False) -> Embedder:
    """Factory function returning an embedder instance given a model name."""
    return InsightFaceEmbedder(model_name=model_name, min_face_size=min_face_size, use_gpu=use_gpu)
