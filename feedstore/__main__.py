"""Maintenance CLI: ``python -m feedstore ensure-indexes`` / ``repair`` / ``verify`` / ``purge-expired``."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from feedstore.app import build_app
from feedstore.shared.memory_store import InMemoryDocumentStore
from feedstore.specs.common.errors import ConsistencyDriftError, FeedStoreError

logger = logging.getLogger("feedstore")


def _ensure_indexes(args: argparse.Namespace) -> int:
    app = build_app(ensure_indexes=False)
    declared = app.indexes.ensure()
    print(json.dumps({name: [s.name for s in specs] for name, specs in declared.items()}, indent=2))
    return 0


def _repair(args: argparse.Namespace) -> int:
    app = build_app(ensure_indexes=False)
    results = [app.posts.repair_comments_count(post_id).model_dump() for post_id in args.post_ids]
    print(json.dumps(results, indent=2))
    return 0


def _verify(args: argparse.Namespace) -> int:
    app = build_app(ensure_indexes=False)
    drifted = 0
    for post_id in args.post_ids:
        try:
            total = app.comments.verify_count(post_id)
            logger.info("%s: %d comments, count consistent", post_id, total)
        except ConsistencyDriftError as drift:
            drifted += 1
            logger.warning("%s: stored=%d actual=%d", post_id, drift.stored, drift.actual)
    return 1 if drifted else 0


def _purge_expired(args: argparse.Namespace) -> int:
    app = build_app()
    if not isinstance(app.store, InMemoryDocumentStore):
        logger.info("Backend expires documents on its own; nothing to purge")
        return 0
    removed = app.store.purge_expired()
    logger.info("Purged %d expired documents", removed)
    return 0


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    parser = argparse.ArgumentParser(prog="feedstore", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("ensure-indexes", help="Declare indexes and TTL").set_defaults(func=_ensure_indexes)

    repair = sub.add_parser("repair", help="Recount comments and fix commentsCount")
    repair.add_argument("post_ids", nargs="+")
    repair.set_defaults(func=_repair)

    verify = sub.add_parser("verify", help="Report posts whose commentsCount drifted")
    verify.add_argument("post_ids", nargs="+")
    verify.set_defaults(func=_verify)

    sub.add_parser("purge-expired", help="Drop expired stories (memory backend)").set_defaults(func=_purge_expired)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except FeedStoreError as exc:
        logger.error("%s", json.dumps(exc.to_dict()))
        return 2


if __name__ == "__main__":
    sys.exit(main())
