#!/usr/bin/env python3
"""
Classify a new post against a cached layout and store the augmented layout.

    python scripts/classify_post.py https://example.com/thread/123 "Rent control just moves the shortage around."
"""
import argparse
import asyncio
import json
import logging

from cosmos.services.cache import ResultCache
from cosmos.services.errors import PipelineError
from cosmos.services.llm_client import InferenceGateway
from cosmos.services.pipeline import CosmosPipeline
from cosmos.settings import settings


async def run(source: str, text: str, author: str) -> dict:
    async with InferenceGateway(settings) as gateway:
        pipeline = CosmosPipeline(gateway, settings, ResultCache.from_settings(settings))
        classified, layout = await pipeline.add_user_post(source, text, author=author)
    placed = next(post for post in layout.posts if post.id == classified.id)
    cluster = next((c.label for c in layout.clusters if classified.id in c.post_ids), None)
    return {
        "id": classified.id,
        "stance": classified.stance,
        "closest_posts": classified.closest_posts,
        "relationship_to_closest": classified.relationship_to_closest,
        "cluster": cluster,
        "position": list(placed.position),
        "narrator_comment": classified.narrator_comment,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("source")
    parser.add_argument("text")
    parser.add_argument("--author", default="user")
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        print(json.dumps(asyncio.run(run(args.source, args.text, args.author)), indent=2))
    except PipelineError as exc:
        raise SystemExit(f"FAIL: {exc.reason}")
    except ValueError as exc:
        raise SystemExit(f"FAIL: {exc}")


if __name__ == "__main__":
    main()
