"""Tests for the command line sub-commands."""

import json

import pytest
from PIL import Image

from bibmatch import pipeline as pipeline_module
from bibmatch.cli import run
from bibmatch.config import parse_args
from bibmatch.db import get_start_list, init_db
from bibmatch.faces import FaceMatch, IndexedFace

from conftest import FakeFaceIndex, FakeTextExtractor, make_photo


BOX = {"width": 0.1, "height": 0.2, "left": 0.3, "top": 0.4}


class LinkingFaceIndex(FakeFaceIndex):
    """Answers searches with whichever photos the linked faces were enrolled on."""

    def __init__(self, links):
        super().__init__()
        self.links = links
        self.owner = {}

    def index_faces(self, image, external_id):
        faces = super().index_faces(image, external_id)
        for face in faces:
            self.owner[face.face_id] = external_id
        return faces

    def search_by_face_id(self, face_id, max_results=100, threshold=85.0):
        self.searched.append(face_id)
        return [FaceMatch(self.owner[other], other, 92.0)
                for other in self.links.get(face_id, []) if other in self.owner]


@pytest.fixture
def extractor():
    return FakeTextExtractor()


@pytest.fixture
def face_index():
    return LinkingFaceIndex({"fa": ["fb"]})


@pytest.fixture(autouse=True)
def fake_providers(monkeypatch, extractor, face_index):
    monkeypatch.setattr(pipeline_module, "get_text_extractor", lambda cfg: extractor)
    monkeypatch.setattr(pipeline_module, "get_face_index", lambda cfg: face_index)


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "cli.sqlite")


def bibmatch(db, *argv, quiet_period="0.2"):
    return run(parse_args(["--db", db, "--quiet-period", quiet_period, *argv], environ={}))


class TestWatch:

    def test_returns_once_clustering_has_run(self, db, tmp_path, extractor, face_index, capsys):
        folder = tmp_path / "finish"
        folder.mkdir()
        Image.new("RGB", (32, 32), (200, 10, 10)).save(folder / "a.jpg")
        Image.new("RGB", (32, 32), (10, 200, 10)).save(folder / "b.jpg")
        extractor.lines[folder / "a.jpg"] = ["1234"]
        face_index.faces_by_image[folder / "a.jpg"] = [IndexedFace("fa", 99.0, BOX)]
        face_index.faces_by_image[folder / "b.jpg"] = [IndexedFace("fb", 99.0, BOX)]

        assert bibmatch(db, "watch", "E", str(folder)) == 0

        status = json.loads(capsys.readouterr().out)
        assert status["total_photos"] == 2
        assert status["photos_with_bibs"] == 2
        assert status["orphan_photos"] == 0
        assert status["needs_clustering"] is False
        assert status["last_clustered_at"] is not None


class TestCluster:

    def test_skips_event_that_does_not_need_clustering(self, db, face_index, capsys):
        with init_db(db).connect() as conn:
            make_photo(conn, "E", "P1", bibs=["7"], faces=["f1"])

        assert bibmatch(db, "cluster", "E") == 0

        assert "does not need clustering" in capsys.readouterr().out
        assert face_index.searched == []

    def test_force_runs_and_prints_stats(self, db, face_index, capsys):
        with init_db(db).connect() as conn:
            make_photo(conn, "E", "P1", bibs=["7"], faces=["f1"])

        assert bibmatch(db, "cluster", "E", "--force") == 0

        stats = json.loads(capsys.readouterr().out)
        assert stats["anchors"] == 1
        assert stats["orphans"] == 0


class TestTagging:

    def test_start_list_import(self, db, tmp_path, capsys):
        start_list = tmp_path / "start.txt"
        start_list.write_text("101\n102\n\n101\n")

        assert bibmatch(db, "start-list", "E", str(start_list)) == 0

        assert "2 bib number(s)" in capsys.readouterr().out
        with init_db(db).connect() as conn:
            assert sorted(get_start_list(conn, "E")) == ["101", "102"]

    def test_tag_then_find_bib(self, db, capsys):
        with init_db(db).connect() as conn:
            make_photo(conn, "E", "P1")

        assert bibmatch(db, "tag", "P1", "55") == 0
        assert bibmatch(db, "tag", "P1", "55") == 0
        assert capsys.readouterr().out.split() == ["tagged", "already", "tagged"]

        assert bibmatch(db, "find-bib", "E", "55") == 0
        (row,) = json.loads(capsys.readouterr().out)
        assert row["id"] == "P1"
        assert row["bibs"] == [{"number": "55", "source": "manual", "confidence": 1.0}]
