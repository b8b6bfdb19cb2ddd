#!/usr/bin/env python3
"""
Run the full pipeline over a discussion exported as JSON and print the layout.

Input file shape: {"topic": "...", "posts": [{"id", "content", "author", "parent_id", "depth", "upvotes"}, ...]}

    python scripts/process_discussion.py thread.json --source https://example.com/thread/123 > layout.json
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from cosmos.schemas import ProgressEvent
from cosmos.services.cache import ResultCache
from cosmos.services.errors import PipelineError
from cosmos.services.llm_client import InferenceGateway
from cosmos.services.pipeline import CosmosPipeline
from cosmos.settings import settings


def print_progress(event: ProgressEvent) -> None:
    detail = f" ({event.detail})" if event.detail else ""
    print(f"[{event.percent:3d}%] {event.stage}{detail}", file=sys.stderr)


async def run(path: Path, source: str, refresh: bool) -> str:
    data = json.loads(path.read_text())

    async def fetch():
        return data["topic"], data["posts"]

    async with InferenceGateway(settings) as gateway:
        pipeline = CosmosPipeline(gateway, settings, ResultCache.from_settings(settings))
        layout = await pipeline.process_source(source, fetch, on_progress=print_progress, refresh=refresh)
    return layout.model_dump_json(indent=2)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("path", type=Path)
    parser.add_argument("--source", help="Cache identifier; defaults to the file path.")
    parser.add_argument("--refresh", action="store_true", help="Ignore a cached layout and recompute it.")
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        print(asyncio.run(run(args.path, args.source or str(args.path), args.refresh)))
    except PipelineError as exc:
        raise SystemExit(f"FAIL: {exc.reason}")
    except ValueError as exc:
        raise SystemExit(f"FAIL: {exc}")


if __name__ == "__main__":
    main()
