"""Tests for the per-photo pipeline and its runner-facing lookups."""

import pytest
from PIL import Image

from bibmatch.config import PipelineConfig
from bibmatch.db import BibSource, add_start_list, create_event, get_bibs, get_photo, insert_photo
from bibmatch.faces import FaceMatch, IndexedFace
from bibmatch.pipeline import IdentityPipeline
from bibmatch.scheduler import ClusteringScheduler, ScheduleState

from conftest import FakeTextExtractor, make_photo


BOX = {"width": 0.1, "height": 0.2, "left": 0.3, "top": 0.4}


@pytest.fixture
def extractor():
    return FakeTextExtractor()


@pytest.fixture
def pipeline(engine, extractor, face_index, timers):
    p = IdentityPipeline(engine, PipelineConfig(), text_extractor=extractor, face_index=face_index)
    p.scheduler = ClusteringScheduler(p.needs_clustering, p.cluster_event, timer_factory=timers)
    yield p
    p.close()


def new_photo(engine, event_id, photo_id):
    with engine.connect() as conn:
        create_event(conn, event_id)
        insert_photo(conn, event_id, photo_id=photo_id)


class TestProcessPhoto:

    def test_stores_ocr_bibs_and_faces(self, pipeline, engine, extractor, face_index, timers):
        new_photo(engine, "E", "P1")
        extractor.lines["img1"] = ["BIB 1234"]
        face_index.faces_by_image["img1"] = [IndexedFace("f1", 99.0, BOX)]

        report = pipeline.process_photo("P1", "img1")

        assert report == {"photo_id": "P1", "bib_numbers": ["1234"], "ocr_provider": "ocr_fake", "faces": 1}
        assert face_index.enrolled == ["E:P1"]
        with engine.connect() as conn:
            (tag,) = get_bibs(conn, "P1")
            photo = get_photo(conn, "P1")
        assert tag.source == BibSource.OCR
        assert tag.confidence == pytest.approx(0.9)
        assert [f.face_id for f in photo.faces] == ["f1"]
        assert pipeline.scheduler.state("E") == ScheduleState.PENDING
        assert len(timers.live()) == 1

    def test_start_list_narrows_candidates(self, pipeline, engine, extractor):
        new_photo(engine, "E", "P1")
        with engine.connect() as conn:
            add_start_list(conn, "E", ["42", "77"])
        extractor.lines["img1"] = ["42 10K 2025"]

        report = pipeline.process_photo("P1", "img1")

        assert report["bib_numbers"] == ["42"]

    def test_ocr_failure_still_schedules(self, pipeline, engine, extractor, face_index, timers):
        new_photo(engine, "E", "P1")
        extractor.failing.add("img1")
        face_index.faces_by_image["img1"] = [IndexedFace("f1", 99.0, BOX)]

        report = pipeline.process_photo("P1", "img1")

        assert report["bib_numbers"] == []
        assert report["faces"] == 1
        assert len(timers.live()) == 1

    def test_face_index_failure_still_schedules(self, pipeline, engine, extractor, face_index, timers):
        new_photo(engine, "E", "P1")
        extractor.lines["img1"] = ["88"]
        face_index.faces_by_image["img1"] = RuntimeError("collection unavailable")

        report = pipeline.process_photo("P1", "img1")

        assert report["bib_numbers"] == ["88"]
        assert report["faces"] == 0
        assert len(timers.live()) == 1

    def test_disabled_face_index_does_not_schedule(self, engine, extractor, timers):
        p = IdentityPipeline(engine, PipelineConfig(face_index_enabled=False), text_extractor=extractor)
        p.scheduler = ClusteringScheduler(p.needs_clustering, p.cluster_event, timer_factory=timers)
        new_photo(engine, "E", "P1")
        extractor.lines["img1"] = ["88"]

        report = p.process_photo("P1", "img1")

        assert p.face_index is None
        assert report["faces"] == 0
        assert timers.timers == []
        assert p.needs_clustering("E") is False

    def test_unknown_photo(self, pipeline):
        with pytest.raises(KeyError):
            pipeline.process_photo("missing", "img1")

    def test_add_photo_creates_event_and_photo(self, pipeline, engine, extractor):
        extractor.lines["img1"] = ["512"]

        report = pipeline.add_photo("E", "img1", path="finish/001.jpg")

        with engine.connect() as conn:
            photo = get_photo(conn, report["photo_id"])
        assert photo.event_id == "E"
        assert photo.path == "finish/001.jpg"
        assert photo.bib_numbers == ["512"]


class TestAutomaticClustering:

    def test_orphan_is_tagged_once_uploads_go_quiet(self, pipeline, engine, extractor, face_index, timers):
        new_photo(engine, "E", "P1")
        new_photo(engine, "E", "P2")
        extractor.lines["img1"] = ["1234"]
        face_index.faces_by_image["img1"] = [IndexedFace("f1", 99.0, BOX)]
        face_index.faces_by_image["img2"] = [IndexedFace("f2", 99.0, BOX)]
        face_index.add_match("f1", "E:P2", "f2", 92.0)

        pipeline.process_photo("P1", "img1")
        pipeline.process_photo("P2", "img2")
        (timer,) = timers.live()
        timer.fire()

        with engine.connect() as conn:
            (tag,) = get_bibs(conn, "P2")
        assert tag.number == "1234"
        assert tag.source == BibSource.FACE_PROPAGATION
        assert tag.confidence == pytest.approx(0.92)
        assert pipeline.needs_clustering("E") is False
        assert pipeline.clustering_status("E")["orphan_photos"] == 0

    def test_photo_enrolled_after_a_run_gets_a_follow_up_run(self, pipeline, engine, extractor,
                                                             face_index, timers):
        for photo_id in ("P1", "P2", "P3"):
            new_photo(engine, "E", photo_id)
        extractor.lines["img1"] = ["1234"]
        face_index.faces_by_image["img1"] = [IndexedFace("f1", 99.0, BOX)]
        face_index.faces_by_image["img2"] = [IndexedFace("f2", 99.0, BOX)]
        face_index.faces_by_image["img3"] = [IndexedFace("f3", 99.0, BOX)]
        face_index.add_match("f1", "E:P2", "f2", 92.0)
        face_index.add_match("f1", "E:P3", "f3", 90.0)

        pipeline.process_photo("P1", "img1")
        pipeline.process_photo("P2", "img2")
        timers.live()[0].fire()
        with engine.connect() as conn:
            assert get_bibs(conn, "P3") == []

        # P3 was uploaded before the run but its faces are enrolled only now
        pipeline.process_photo("P3", "img3")
        assert pipeline.needs_clustering("E") is True
        timers.live()[0].fire()

        with engine.connect() as conn:
            assert [b.number for b in get_bibs(conn, "P3")] == ["1234"]
        assert pipeline.needs_clustering("E") is False


class TestIngestFolder:

    def test_processes_every_readable_image(self, pipeline, engine, extractor, tmp_path):
        folder = tmp_path / "uploads"
        (folder / "finish").mkdir(parents=True)
        Image.new("RGB", (32, 32), (200, 10, 10)).save(folder / "a.jpg")
        Image.new("RGB", (32, 32), (10, 200, 10)).save(folder / "finish" / "b.png")
        (folder / "broken.jpg").write_bytes(b"not an image")
        (folder / "notes.txt").write_text("ignored")
        extractor.lines[folder / "a.jpg"] = ["301"]
        extractor.lines[folder / "finish" / "b.png"] = ["302"]

        reports = pipeline.ingest_folder("E", folder)

        assert sorted(n for r in reports for n in r["bib_numbers"]) == ["301", "302"]
        assert [p.path for p in pipeline.search_by_bib("E", "302")] == [str(folder / "finish" / "b.png")]


class TestLookups:

    def test_manual_bib(self, pipeline, engine):
        with engine.connect() as conn:
            make_photo(conn, "E", "P1")

        assert pipeline.add_manual_bib("P1", " 77 ") is True
        assert pipeline.add_manual_bib("P1", "77") is False

        with engine.connect() as conn:
            (tag,) = get_bibs(conn, "P1")
        assert tag.source == BibSource.MANUAL
        assert tag.confidence == 1.0

    def test_manual_bib_validation(self, pipeline, engine):
        with engine.connect() as conn:
            make_photo(conn, "E", "P1")

        with pytest.raises(ValueError):
            pipeline.add_manual_bib("P1", "  ")
        with pytest.raises(KeyError):
            pipeline.add_manual_bib("missing", "77")

    def test_search_by_bib_covers_every_source(self, pipeline, engine):
        with engine.connect() as conn:
            make_photo(conn, "E", "P1", bibs=["5"])
            make_photo(conn, "E", "P2", bibs=["5"], source=BibSource.FACE_PROPAGATION)
            make_photo(conn, "E", "P3", bibs=["6"])
            make_photo(conn, "F", "P4", bibs=["5"])

        assert sorted(p.id for p in pipeline.search_by_bib("E", "5")) == ["P1", "P2"]

    def test_search_by_selfie_stays_within_event(self, pipeline, engine, face_index):
        with engine.connect() as conn:
            make_photo(conn, "E", "P1", faces=["f1"])
            make_photo(conn, "E", "P2", faces=["f2"])
            make_photo(conn, "F", "P3", faces=["f3"])
        face_index.selfie_matches = [
            FaceMatch("E:P1", "f1", 91.0),
            FaceMatch("F:P3", "f3", 95.0),
            FaceMatch("E:P2", "f2", 65.0),
            FaceMatch("garbage", "fx", 99.0),
        ]

        photos = pipeline.search_by_selfie("E", "selfie.jpg")

        assert [p.id for p in photos] == ["P1"]

    def test_search_by_selfie_requires_face_index(self, engine, extractor):
        p = IdentityPipeline(engine, PipelineConfig(face_index_enabled=False), text_extractor=extractor)

        with pytest.raises(RuntimeError):
            p.search_by_selfie("E", "selfie.jpg")
