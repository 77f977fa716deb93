"""
Image scanning and loading.

The adapters accept a photo in whichever form the caller has at hand: a
filesystem path, the encoded bytes of an upload, or an already decoded BGR
array.  Remote providers want encoded bytes, local models want arrays; the
helpers below convert between the two.  Folder scanning with optional
perceptual‑hash duplicate skipping is used by bulk ingestion.
"""

from __future__ import annotations

import io
import os
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple, Union

import cv2
import imagehash
import numpy as np
from PIL import Image, ImageOps

ImageSource = Union[str, Path, bytes, bytearray, np.ndarray]

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp")


def iter_image_paths(root: Path) -> Iterator[Path]:
    """Yield all files under ``root`` that have an image‑like extension, in sorted order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in sorted(filenames):
            if fn.lower().endswith(IMAGE_EXTENSIONS):
                yield Path(dirpath) / fn


def read_image_bytes(source: ImageSource) -> bytes:
    """Return the encoded bytes of an image (JPEG for decoded arrays)."""
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    if isinstance(source, np.ndarray):
        ok, buf = cv2.imencode(".jpg", source, [int(cv2.IMWRITE_JPEG_QUALITY), 90])
        if not ok:
            raise ValueError("could not encode image array as JPEG")
        return buf.tobytes()
    return Path(source).read_bytes()


def load_image(source: ImageSource) -> np.ndarray:
    """Decode an image into a BGR ``uint8`` array, honouring EXIF orientation."""
    if isinstance(source, np.ndarray):
        return source
    data = read_image_bytes(source)
    with Image.open(io.BytesIO(data)) as im:
        im = ImageOps.exif_transpose(im).convert("RGB")
        rgb = np.asarray(im)
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def read_image_metadata(path: Path, compute_phash: bool = False) -> Optional[Tuple[int, int, Optional[str]]]:
    """Read ``(width, height, phash)`` for an image, or ``None`` if it cannot be opened.

    The perceptual hash is a hexadecimal string computed with imagehash; it
    is only computed when ``compute_phash`` is ``True``.
    """
    try:
        with Image.open(path) as im:
            width, height = im.size
            phash = str(imagehash.phash(im)) if compute_phash else None
            return width, height, phash
    except (OSError, ValueError):
        return None


def scan_images(root: Path, use_phash: bool = False) -> Iterator[Tuple[Path, Dict[str, Any]]]:
    """Iterate over image files under ``root`` and yield ``(path, meta)``.

    ``meta`` holds ``width``, ``height`` and ``phash``.  Files that cannot
    be opened as images are skipped, as are perceptual duplicates when
    ``use_phash`` is set.
    """
    seen_hashes = set()
    for path in iter_image_paths(root):
        meta = read_image_metadata(path, compute_phash=use_phash)
        if meta is None:
            continue
        width, height, phash = meta
        if use_phash and phash:
            if phash in seen_hashes:
                continue
            seen_hashes.add(phash)
        yield path, {"width": width, "height": height, "phash": phash}
