"""Shared fixtures and in-memory fakes for the bibmatch tests."""

import datetime as dt
from typing import Dict, List

import pytest

from bibmatch.db import BibSource, create_event, init_db, insert_bib_if_absent, insert_faces, insert_photo
from bibmatch.faces import FaceMatch, IndexedFace
from bibmatch.ocr import TextDetection


T0 = dt.datetime(2026, 5, 1, 9, 0, 0)


class FakeFaceIndex:
    """Face index returning canned matches per face id."""

    def __init__(self):
        self.matches: Dict[str, List[FaceMatch]] = {}
        self.errors: Dict[str, Exception] = {}
        self.faces_by_image: Dict[str, List[IndexedFace]] = {}
        self.selfie_matches: List[FaceMatch] = []
        self.searched: List[str] = []
        self.enrolled: List[str] = []

    def add_match(self, face_id, external_id, match_face_id, similarity):
        self.matches.setdefault(face_id, []).append(FaceMatch(external_id, match_face_id, similarity))

    def index_faces(self, image, external_id):
        self.enrolled.append(external_id)
        if isinstance(self.faces_by_image.get(image), Exception):
            raise self.faces_by_image[image]
        return list(self.faces_by_image.get(image, []))

    def search_by_face_id(self, face_id, max_results=100, threshold=85.0):
        self.searched.append(face_id)
        if face_id in self.errors:
            raise self.errors[face_id]
        hits = [m for m in self.matches.get(face_id, []) if m.similarity >= threshold]
        return hits[:max_results]

    def search_by_image(self, image, max_results=20, threshold=80.0):
        return [m for m in self.selfie_matches if m.similarity >= threshold][:max_results]


class FakeTextExtractor:
    """Text extractor returning canned LINE detections per image key."""

    provider = "ocr_fake"

    def __init__(self, lines=None, confidence=90.0):
        self.lines: Dict[str, List[str]] = lines or {}
        self.confidence = confidence
        self.failing = set()

    def detect_text(self, image):
        if image in self.failing:
            raise RuntimeError("provider unavailable")
        return [TextDetection(text, self.confidence, "LINE") for text in self.lines.get(image, [])]


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.callback()


class FakeTimerFactory:
    """Records every timer created so tests can fire them by hand."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def live(self):
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]


@pytest.fixture
def engine(tmp_path):
    return init_db(tmp_path / "bibmatch.sqlite")


@pytest.fixture
def conn(engine):
    with engine.connect() as connection:
        yield connection


@pytest.fixture
def face_index():
    return FakeFaceIndex()


@pytest.fixture
def timers():
    return FakeTimerFactory()


def make_photo(conn, event_id, photo_id, bibs=(), faces=(), created_at=None, source=BibSource.OCR):
    """Create a photo with the given bib numbers and face ids."""
    create_event(conn, event_id)
    insert_photo(conn, event_id, photo_id=photo_id, created_at=created_at or T0)
    for number in bibs:
        insert_bib_if_absent(conn, photo_id, number, 0.95, source)
    insert_faces(conn, photo_id, [{"face_id": f, "confidence": 99.0} for f in faces])
    return photo_id
