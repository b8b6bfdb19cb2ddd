import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from pydantic import ValidationError

from cosmos.schemas import EnrichedPost, Labels, RawPost
from cosmos.services.errors import SchemaViolation
from cosmos.services.labels import extract_labels, format_labels, merge_labels
from cosmos.services.llm_client import InferenceGateway, Tier
from cosmos.services.utils import batched
from cosmos.settings import Settings

logger = logging.getLogger(__name__)

PROMPT_PATH = Path(__file__).resolve().parents[1] / "prompts" / "enrichment_prompt.txt"
RAW_FIELDS = {"content", "author", "parent_id", "depth", "upvotes"}

BatchStartCallback = Callable[[int, int], None]
BatchDoneCallback = Callable[[int, int, list[EnrichedPost], Labels], None]


def build_batch_message(
    posts: Sequence[RawPost], batch_index: int, total_batches: int, labels: Labels | None = None
) -> str:
    lines = [f"BATCH {batch_index + 1} of {total_batches}", ""]
    if labels is not None and batch_index > 0:
        lines.append("ESTABLISHED LABELS (you MUST reuse these exact strings for consistency):")
        lines.append(format_labels(labels))
        lines.append("")
    lines.append("POSTS TO ANALYZE:")
    lines.append("")
    for post in posts:
        lines.extend(
            [
                "---",
                f"ID: {post.id}",
                f"Author: {post.author}",
                f"Parent: {post.parent_id or 'none (top-level)'}",
                f"Depth: {post.depth}",
                f"Upvotes: {post.upvotes}",
                f"Content: {post.content}",
                "",
            ]
        )
    return "\n".join(lines)


def stitch_raw_fields(records: list, posts: Sequence[RawPost]) -> list[EnrichedPost]:
    """Validate model records, overwriting raw fields from the matching source post.

    Records whose id is not in ``posts`` are kept as the model returned them.
    """
    by_id = {post.id: post for post in posts}
    enriched = []
    for record in records:
        if not isinstance(record, dict) or record.get("id") in (None, ""):
            raise SchemaViolation("Enrichment record is missing an id.")
        record_id = str(record["id"])
        raw = by_id.get(record_id)
        if raw is None:
            logger.warning("Enriched record %s matches no post in its batch; passing it through.", record_id)
            merged = record
        else:
            merged = {**record, "id": raw.id, **raw.model_dump(include=RAW_FIELDS)}
        try:
            enriched.append(EnrichedPost.model_validate(merged))
        except ValidationError as exc:
            raise SchemaViolation(f"Enrichment record {record_id} is invalid: {exc}") from exc
    return enriched


async def enrich_batch(
    gateway: InferenceGateway,
    posts: Sequence[RawPost],
    batch_index: int,
    total_batches: int,
    settings: Settings,
    labels: Labels | None = None,
) -> list[EnrichedPost]:
    payload = await gateway.complete_json(
        system_prompt=PROMPT_PATH.read_text(),
        user_message=build_batch_message(posts, batch_index, total_batches, labels),
        max_tokens=settings.enrichment_max_tokens,
        tier=Tier.DEEP,
    )
    if not isinstance(payload, list):
        raise SchemaViolation(f"Batch {batch_index + 1} did not return a JSON array of posts.")
    return stitch_raw_fields(payload, posts)


async def enrich_posts(
    gateway: InferenceGateway,
    raw_posts: Sequence[RawPost],
    settings: Settings,
    on_batch_start: BatchStartCallback | None = None,
    on_batch_done: BatchDoneCallback | None = None,
) -> tuple[list[EnrichedPost], Labels]:
    # Sequential on purpose: batch i is prompted with the labels of batches 0..i-1.
    batches = batched(raw_posts, settings.enrichment_batch_size)
    total = len(batches)
    raw_by_id = {post.id: post for post in raw_posts}
    enriched: list[EnrichedPost] = []
    position_of: dict[str, int] = {}
    # Ids first enriched by a batch that did not own them.
    borrowed: set[str] = set()
    labels = Labels()

    for index, batch in enumerate(batches):
        if on_batch_start is not None:
            on_batch_start(index, total)
        result = await enrich_batch(gateway, batch, index, total, settings, labels if index > 0 else None)
        own_ids = {post.id for post in batch}
        for post in result:
            raw = raw_by_id.get(post.id)
            foreign = raw is not None and post.id not in own_ids
            if foreign:
                post = post.model_copy(update=raw.model_dump(include=RAW_FIELDS))
            if post.id in position_of:
                if post.id in borrowed and post.id in own_ids:
                    enriched[position_of[post.id]] = post
                    borrowed.discard(post.id)
                    continue
                logger.warning("Dropping duplicate enriched record %s from batch %d.", post.id, index + 1)
                continue
            position_of[post.id] = len(enriched)
            enriched.append(post)
            if foreign:
                borrowed.add(post.id)
        # Labels already shown to the model stay even if their record was replaced.
        labels = merge_labels(labels, extract_labels(enriched))
        logger.info(
            "Batch %d/%d enriched: %d posts, %d stances, %d themes",
            index + 1,
            total,
            len(result),
            len(labels.stances),
            len(labels.themes),
        )
        if on_batch_done is not None:
            on_batch_done(index, total, list(enriched), labels)

    missing = [post.id for post in raw_posts if post.id not in position_of]
    if missing:
        logger.warning("%d posts were not returned by enrichment: %s", len(missing), ", ".join(missing[:20]))
    return enriched, labels
