"""
Top‑level package for the bibmatch identity pipeline.

Race photos are tagged with the bib numbers of the runners they show.  OCR
tags the photos where a bib is readable; face similarity then propagates
those bib numbers to photos of the same runners where it is not.

The functionality is organised into smaller modules:

- :mod:`bibmatch.config` – configuration dataclass, environment and CLI parsing.
- :mod:`bibmatch.db` – SQLAlchemy schema and storage operations.
- :mod:`bibmatch.images` – loading photos and scanning input folders.
- :mod:`bibmatch.ocr` – bib number extraction (AWS Rekognition or EasyOCR).
- :mod:`bibmatch.embedders` – InsightFace wrapper producing face embeddings.
- :mod:`bibmatch.embeddings_io` – Parquet persistence of the local face collection.
- :mod:`bibmatch.faces` – face enrolment and similarity search (Rekognition or FAISS).
- :mod:`bibmatch.classify` – anchor/orphan classification of an event's photos.
- :mod:`bibmatch.clustering` – propagation of bib numbers by face similarity.
- :mod:`bibmatch.scheduler` – debounced per‑event scheduling of clustering runs.
- :mod:`bibmatch.pipeline` – per‑photo processing and wiring of all components.

You can run the pipeline from the command line using the ``bibmatch`` script
installed by this package.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "db",
    "images",
    "ocr",
    "embedders",
    "embeddings_io",
    "faces",
    "classify",
    "clustering",
    "scheduler",
    "pipeline",
]
