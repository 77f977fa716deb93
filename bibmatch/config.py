"""
Configuration structures for the bibmatch identity pipeline.

A single :class:`PipelineConfig` dataclass carries every tunable used by the
OCR adapter, the face index, the propagation engine and the clustering
scheduler.  Defaults come from the environment (see
:meth:`PipelineConfig.from_env`) so a deployment can be configured without
touching code; the command line interface layers its own overrides on top via
:func:`parse_args`.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class PipelineConfig:
    """Parameters controlling OCR, face indexing and clustering.

    Attributes
    ----------
    db_url: str
        SQLAlchemy URL (or a plain filesystem path, treated as SQLite) of the
        database holding events, photos, bib numbers and faces.
    aws_enabled: bool
        Whether AWS credentials are available.  Selects the Rekognition
        adapters when the providers below are left on ``"auto"``.
    aws_region: str
        Region used for the Rekognition client.
    face_index_enabled: bool
        When ``False`` no faces are enrolled and clustering is a no‑op.
    face_collection_id: str
        Name of the Rekognition face collection shared by all events.
    ocr_provider: str
        ``"auto"``, ``"rekognition"`` or ``"easyocr"``.
    face_backend: str
        ``"auto"``, ``"rekognition"`` or ``"local"``.  The local backend uses
        InsightFace embeddings searched with FAISS.
    local_collection_dir: Path
        Directory where the local face collection is persisted as Parquet
        parts.
    model_name: str
        InsightFace model package for the local backend.
    min_face_size: int
        Minimum face side length in pixels for the local backend.
    index_max_faces: int
        Maximum number of faces enrolled per photo.
    cluster_quiet_period: float
        Seconds of inactivity after the last processed photo before an
        event is clustered.
    cluster_similarity_threshold: float
        Minimum face similarity (percent) for propagating a bib number.
        Kept high: a wrong bib is worse than a missing one.
    cluster_max_results: int
        Maximum matches returned per face search during clustering.
    selfie_max_results: int
        Maximum matches returned for a selfie search.
    selfie_similarity_threshold: float
        Minimum similarity (percent) for a selfie match.
    """
    db_url: str = "sqlite:///bibmatch.sqlite"
    aws_enabled: bool = False
    aws_region: str = "eu-west-1"
    face_index_enabled: bool = True
    face_collection_id: str = "bibmatch-faces"
    ocr_provider: str = "auto"
    face_backend: str = "auto"
    local_collection_dir: Path = Path("face_collection")
    model_name: str = "buffalo_l"
    min_face_size: int = 40
    index_max_faces: int = 10
    cluster_quiet_period: float = 30.0
    cluster_similarity_threshold: float = 85.0
    cluster_max_results: int = 100
    selfie_max_results: int = 50
    selfie_similarity_threshold: float = 70.0
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        """Build a configuration from environment variables.

        AWS is considered configured only when ``AWS_ACCESS_KEY_ID``,
        ``AWS_SECRET_ACCESS_KEY`` and ``AWS_REGION`` are all set.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        aws_enabled = all(env.get(k) for k in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION"))
        return cls(
            db_url=env.get("BIBMATCH_DB_URL", defaults.db_url),
            aws_enabled=aws_enabled,
            aws_region=env.get("AWS_REGION") or defaults.aws_region,
            face_index_enabled=_flag(env.get("BIBMATCH_FACE_INDEX_ENABLED"), True),
            face_collection_id=env.get("AWS_REKOGNITION_COLLECTION_ID", defaults.face_collection_id),
            ocr_provider=env.get("BIBMATCH_OCR_PROVIDER", defaults.ocr_provider),
            face_backend=env.get("BIBMATCH_FACE_BACKEND", defaults.face_backend),
            local_collection_dir=Path(env.get("BIBMATCH_COLLECTION_DIR", str(defaults.local_collection_dir))),
            model_name=env.get("BIBMATCH_MODEL", defaults.model_name),
            min_face_size=int(env.get("BIBMATCH_MIN_FACE_SIZE", defaults.min_face_size)),
            cluster_quiet_period=float(env.get("BIBMATCH_CLUSTER_DELAY", defaults.cluster_quiet_period)),
            cluster_similarity_threshold=float(
                env.get("BIBMATCH_CLUSTER_THRESHOLD", defaults.cluster_similarity_threshold)
            ),
        )

    @property
    def uses_rekognition_ocr(self) -> bool:
        if self.ocr_provider == "auto":
            return self.aws_enabled
        return self.ocr_provider == "rekognition"

    @property
    def uses_rekognition_faces(self) -> bool:
        if self.face_backend == "auto":
            return self.aws_enabled
        return self.face_backend == "rekognition"


def parse_args(argv: Optional[list[str]] = None,
               environ: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """Parse command line arguments on top of the environment configuration.

    The chosen sub-command and its arguments are stored in
    :attr:`PipelineConfig.extra` (``command`` plus one key per option) so
    that :mod:`bibmatch.cli` can dispatch on them.
    """
    parser = argparse.ArgumentParser(
        prog="bibmatch",
        description="Bib number detection and face-based bib propagation for race photos",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--db", dest="db_url", type=str, default=None,
                        help="SQLAlchemy URL or path of the SQLite database")
    parser.add_argument("--ocr-provider", dest="ocr_provider", default=None,
                        choices=["auto", "rekognition", "easyocr"],
                        help="Text extraction provider")
    parser.add_argument("--face-backend", dest="face_backend", default=None,
                        choices=["auto", "rekognition", "local"],
                        help="Face index backend")
    parser.add_argument("--collection-dir", dest="local_collection_dir", type=Path, default=None,
                        help="Directory of the local face collection")
    parser.add_argument("--no-faces", dest="no_faces", action="store_true",
                        help="Disable face indexing and clustering")
    parser.add_argument("--threshold", dest="cluster_similarity_threshold", type=float, default=None,
                        help="Face similarity threshold (percent) for bib propagation")
    parser.add_argument("--quiet-period", dest="cluster_quiet_period", type=float, default=None,
                        help="Seconds to wait after the last photo before clustering")
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true",
                        help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-event", help="Create an event")
    p.add_argument("event_id")
    p.add_argument("--name", default=None)

    p = sub.add_parser("start-list", help="Import bib numbers of a start list (one per line)")
    p.add_argument("event_id")
    p.add_argument("start_list", type=Path)

    p = sub.add_parser("ingest", help="Process every image of a folder into an event")
    p.add_argument("event_id")
    p.add_argument("input_dir", type=Path)
    p.add_argument("--use-phash", action="store_true",
                   help="Skip perceptual duplicates within the folder")

    p = sub.add_parser("watch", help="Ingest a folder and wait for automatic clustering")
    p.add_argument("event_id")
    p.add_argument("input_dir", type=Path)
    p.add_argument("--use-phash", action="store_true")

    p = sub.add_parser("cluster", help="Propagate bib numbers by face similarity")
    p.add_argument("event_id")
    p.add_argument("--force", action="store_true",
                   help="Run even if the event does not need clustering")

    p = sub.add_parser("status", help="Show clustering status of an event")
    p.add_argument("event_id")

    p = sub.add_parser("find-bib", help="List photos tagged with a bib number")
    p.add_argument("event_id")
    p.add_argument("number")

    p = sub.add_parser("find-selfie", help="List photos matching a selfie")
    p.add_argument("event_id")
    p.add_argument("selfie", type=Path)

    p = sub.add_parser("tag", help="Manually tag a photo with a bib number")
    p.add_argument("photo_id")
    p.add_argument("number")

    args = parser.parse_args(argv)

    cfg = PipelineConfig.from_env(environ)
    overrides: Dict[str, Any] = {}
    if args.db_url:
        overrides["db_url"] = args.db_url
    for name in ("ocr_provider", "face_backend", "local_collection_dir",
                 "cluster_similarity_threshold", "cluster_quiet_period"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    if args.no_faces:
        overrides["face_index_enabled"] = False
    cfg = replace(cfg, **overrides)

    global_opts = {"db_url", "ocr_provider", "face_backend", "local_collection_dir",
                   "no_faces", "cluster_similarity_threshold", "cluster_quiet_period"}
    cfg.extra = {k: v for k, v in vars(args).items() if k not in global_opts}
    return cfg
