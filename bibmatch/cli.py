"""
Command‑line entry point for the bibmatch identity pipeline.

This module parses command line arguments into a :class:`PipelineConfig`,
builds an :class:`IdentityPipeline` and dispatches on the sub‑command.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, List

from .config import PipelineConfig, parse_args
from .db import Photo, add_start_list, create_event, init_db
from .pipeline import IdentityPipeline


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _photo_rows(photos: List[Photo]) -> List[dict]:
    return [
        {"id": p.id, "path": p.path, "bibs": [{"number": b.number, "source": b.source.value,
                                             "confidence": round(b.confidence, 3)} for b in p.bibs]}
        for p in photos
    ]


def run(cfg: PipelineConfig) -> int:
    opts = cfg.extra
    command = opts["command"]
    engine = init_db(cfg.db_url)

    if command == "init-event":
        with engine.connect() as conn:
            create_event(conn, opts["event_id"], name=opts.get("name"))
        print(opts["event_id"])
        return 0
    if command == "start-list":
        numbers = [line.strip() for line in opts["start_list"].read_text().splitlines()]
        with engine.connect() as conn:
            create_event(conn, opts["event_id"])
            added = add_start_list(conn, opts["event_id"], numbers)
        print(f"{added} bib number(s) added to the start list of {opts['event_id']}")
        return 0

    pipeline = IdentityPipeline(engine, cfg)
    try:
        if command == "ingest":
            reports = pipeline.ingest_folder(opts["event_id"], opts["input_dir"], use_phash=opts["use_phash"])
            _print_json(reports)
        elif command == "watch":
            pipeline.ingest_folder(opts["event_id"], opts["input_dir"], use_phash=opts["use_phash"])
            logging.getLogger(__name__).info(
                "Waiting for automatic clustering (%.0fs quiet period)", cfg.cluster_quiet_period)
            pipeline.scheduler.wait_idle()
            _print_json(pipeline.clustering_status(opts["event_id"]))
        elif command == "cluster":
            if not opts["force"] and not pipeline.needs_clustering(opts["event_id"]):
                print(f"Event {opts['event_id']} does not need clustering")
                return 0
            _print_json(pipeline.cluster_event(opts["event_id"]).as_dict())
        elif command == "status":
            _print_json(pipeline.clustering_status(opts["event_id"]))
        elif command == "find-bib":
            _print_json(_photo_rows(pipeline.search_by_bib(opts["event_id"], opts["number"])))
        elif command == "find-selfie":
            _print_json(_photo_rows(pipeline.search_by_selfie(opts["event_id"], opts["selfie"])))
        elif command == "tag":
            created = pipeline.add_manual_bib(opts["photo_id"], opts["number"])
            print("tagged" if created else "already tagged")
        else:
            raise RuntimeError(f"Unknown command {command!r}")
    finally:
        pipeline.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    """Entry point called by the ``bibmatch`` script."""
    cfg = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if cfg.extra.get("verbose") else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(run(cfg))


if __name__ == "__main__":
    main(sys.argv[1:])
