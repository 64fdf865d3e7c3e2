#!/usr/bin/env python3
"""
Generate JSON Schemas (and YAML variants) for the persisted documents and feed models.

Outputs under feedstore/specs/schemas/ plus an index file listing them.
The schemas document the layout for external consumers; nothing validates
stored documents against them.
"""
from __future__ import annotations

import json
import sys
from pathlib import Path

try:
    import yaml  # type: ignore
except Exception as exc:  # pragma: no cover
    print("PyYAML is required: pip install pyyaml", file=sys.stderr)
    raise


ROOT = Path(__file__).resolve().parents[1]
SPECS = ROOT / "feedstore" / "specs"
SCHEMAS_DIR = SPECS / "schemas"

sys.path.insert(0, str(ROOT))

from feedstore.specs.models import SCHEMA_MODELS  # noqa: E402
from feedstore.services.index_manager import comment_indexes, post_indexes  # noqa: E402


def write_json_yaml(obj: dict, json_path: Path) -> None:
    json_path.parent.mkdir(parents=True, exist_ok=True)
    with json_path.open("w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
    yaml_path = json_path.with_suffix(".yaml")
    with yaml_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(obj, f, sort_keys=False)


def generate_model_schemas(target: Path = SCHEMAS_DIR) -> list[str]:
    written = []
    for filename, model in SCHEMA_MODELS.items():
        schema = model.model_json_schema()
        write_json_yaml(schema, target / filename)
        written.append(filename)
    return written


def build_layout() -> dict:
    # Persisted layout: which schema lives in which container, and its indexes
    return {
        "kind": "feedstore-layout",
        "version": "0.1.0",
        "containers": {
            "posts": {
                "partitionKey": "/id",
                "schema": {"$ref": "./schemas/post.document.schema.json"},
                "ttlField": "ttlAt",
                "indexes": [s.model_dump(mode="json") for s in post_indexes()],
            },
            "comments": {
                "partitionKey": "/postId",
                "schema": {"$ref": "./schemas/comment.document.schema.json"},
                "indexes": [s.model_dump(mode="json") for s in comment_indexes()],
            },
        },
    }


def main() -> None:
    generate_model_schemas()
    write_json_yaml(build_layout(), SPECS / "layout.json")
    print("Specs generated under feedstore/specs/")


if __name__ == "__main__":
    main()
