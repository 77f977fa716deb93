"""
Bib number extraction from race photos.

Two text detection providers are supported behind the same
:class:`TextExtractor` interface:

- :class:`RekognitionTextExtractor` – AWS Rekognition ``DetectText``; fast and
  accurate, used in production whenever AWS credentials are configured.
- :class:`EasyOCRTextExtractor` – a local EasyOCR reader, used for
  development or when no AWS account is available.

Both return raw text detections; :func:`parse_bib_numbers` turns them into a
sorted list of plausible bib numbers and :func:`extract_bib_numbers` wraps the
whole thing so that an OCR failure never aborts the processing of a batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol, Set

from .config import PipelineConfig
from .images import ImageSource, load_image, read_image_bytes

logger = logging.getLogger(__name__)

BIB_NUMBER_REGEX = re.compile(r"\b\d{1,5}\b")
MIN_BIB = 1
MAX_BIB = 99999
# Years printed on race bibs and banners are not bib numbers
YEAR_RANGE = (1900, 2100)


@dataclass
class TextDetection:
    """One piece of text found in an image.

    ``confidence`` is a percentage in ``[0, 100]``; ``kind`` is ``"LINE"`` or
    ``"WORD"`` following Rekognition's vocabulary.
    """
    text: str
    confidence: float
    kind: str = "LINE"


@dataclass
class OCRResult:
    bib_numbers: List[str] = field(default_factory=list)
    confidence: float = 0.0  # normalised to [0, 1]
    provider: str = ""
    raw_text: str = ""


class TextExtractor(Protocol):
    """Anything able to detect text lines in a photo."""

    provider: str

    def detect_text(self, image: ImageSource) -> List[TextDetection]:
        ...


class RekognitionTextExtractor:
    """Text detection with AWS Rekognition ``DetectText``."""

    provider = "ocr_aws"

    def __init__(self, client: Any = None, region: str = "eu-west-1") -> None:
        if client is None:
            import boto3
            client = boto3.client("rekognition", region_name=region)
        self.client = client

    def detect_text(self, image: ImageSource) -> List[TextDetection]:
        response = self.client.detect_text(Image={"Bytes": read_image_bytes(image)})
        return [
            TextDetection(
                text=d.get("DetectedText", ""),
                confidence=float(d.get("Confidence", 0.0)),
                kind=d.get("Type", ""),
            )
            for d in response.get("TextDetections", [])
        ]


class EasyOCRTextExtractor:
    """Local text detection with EasyOCR.

    The reader is created lazily on first use since loading the model is
    slow and may download weights.
    """

    provider = "ocr_easyocr"

    def __init__(self, reader: Any = None, languages: Iterable[str] = ("en",), gpu: bool = False) -> None:
        self._reader = reader
        self.languages = list(languages)
        self.gpu = gpu

    @property
    def reader(self) -> Any:
        if self._reader is None:
            import easyocr
            self._reader = easyocr.Reader(self.languages, gpu=self.gpu, verbose=False)
        return self._reader

    def detect_text(self, image: ImageSource) -> List[TextDetection]:
        results = self.reader.readtext(load_image(image), paragraph=False)
        # EasyOCR confidences are in [0, 1]
        return [
            TextDetection(text=str(text), confidence=float(conf) * 100.0, kind="LINE")
            for _bbox, text, conf in results
        ]


def get_text_extractor(config: PipelineConfig) -> TextExtractor:
    """Factory returning the text extractor selected by ``config``."""
    provider = config.ocr_provider.lower()
    if provider not in ("auto", "rekognition", "easyocr"):
        raise RuntimeError(f"Unknown OCR provider {config.ocr_provider!r}")
    if config.uses_rekognition_ocr:
        return RekognitionTextExtractor(region=config.aws_region)
    return EasyOCRTextExtractor()


def _is_plausible_bib(token: str) -> bool:
    n = int(token)
    return MIN_BIB <= n <= MAX_BIB and not (YEAR_RANGE[0] <= n <= YEAR_RANGE[1])


def parse_bib_numbers(detections: Iterable[TextDetection],
                      valid_bibs: Optional[Set[str]] = None) -> List[str]:
    """Extract candidate bib numbers from text detections.

    Only ``LINE`` detections are scanned (words are sub‑parts of lines and
    would duplicate them).  When ``valid_bibs`` is given and at least one
    candidate is on it, only the validated candidates are kept; otherwise
    every candidate is kept for manual review.

    Returns
    -------
    list of str
        Unique candidates sorted numerically.
    """
    text = " ".join(d.text for d in detections if d.kind == "LINE")
    candidates = list(dict.fromkeys(BIB_NUMBER_REGEX.findall(text)))
    bibs = [c for c in candidates if _is_plausible_bib(c)]
    if valid_bibs:
        validated = [b for b in bibs if b in valid_bibs]
        if validated:
            bibs = validated
    return sorted(bibs, key=int)


def extract_bib_numbers(extractor: TextExtractor, image: ImageSource,
                        valid_bibs: Optional[Set[str]] = None) -> OCRResult:
    """Detect bib numbers in a photo.

    Never raises: any provider error is logged and turned into an empty
    result with zero confidence, so one unreadable photo cannot abort a batch.
    """
    try:
        detections = extractor.detect_text(image)
    except Exception as exc:
        logger.error("OCR with %s failed: %s", extractor.provider, exc)
        return OCRResult(provider=extractor.provider)
    bibs = parse_bib_numbers(detections, valid_bibs)
    confidence = sum(d.confidence for d in detections) / len(detections) if detections else 0.0
    result = OCRResult(
        bib_numbers=bibs,
        confidence=min(max(confidence / 100.0, 0.0), 1.0),
        provider=extractor.provider,
        raw_text=" ".join(d.text for d in detections),
    )
    logger.debug("OCR via %s found %s (confidence %.2f)",
                 result.provider, ", ".join(bibs) or "none", result.confidence)
    return result
