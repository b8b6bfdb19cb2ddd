import logging
from collections import defaultdict
from collections.abc import Sequence
from itertools import combinations
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from cosmos.schemas import EnrichedPost, Labels, LayoutDraft
from cosmos.services.errors import SchemaViolation
from cosmos.services.geometry import angular_distance, within_layout_bounds
from cosmos.services.labels import format_labels
from cosmos.services.llm_client import InferenceGateway, Tier
from cosmos.services.utils import to_pretty_json
from cosmos.settings import Settings

logger = logging.getLogger(__name__)

PROMPT_PATH = Path(__file__).resolve().parents[1] / "prompts" / "layout_prompt.txt"
CONDENSED_FIELDS = {
    "id",
    "stance",
    "themes",
    "emotion",
    "post_type",
    "importance",
    "core_claim",
    "embedding_hint",
    "relationships",
    "logical_chain",
    "parent_id",
    "upvotes",
}


def _fmt(value: float) -> str:
    return f"{value:g}"


def build_system_prompt(settings: Settings) -> str:
    replacements = {
        "{theta_min}": _fmt(settings.theta_range[0]),
        "{theta_max}": _fmt(settings.theta_range[1]),
        "{phi_min}": _fmt(settings.phi_range[0]),
        "{phi_max}": _fmt(settings.phi_range[1]),
        "{r_min}": _fmt(settings.r_offset_range[0]),
        "{r_max}": _fmt(settings.r_offset_range[1]),
        "{min_clusters}": str(settings.min_clusters),
        "{max_clusters}": str(settings.max_clusters),
        "{min_separation}": _fmt(settings.min_cluster_separation_deg),
        "{max_radius}": _fmt(settings.max_post_radius_deg),
    }
    prompt = PROMPT_PATH.read_text()
    for placeholder, value in replacements.items():
        prompt = prompt.replace(placeholder, value)
    return prompt


def build_layout_message(posts: Sequence[EnrichedPost], labels: Labels, topic: str) -> str:
    condensed = [post.model_dump(include=CONDENSED_FIELDS) for post in posts]
    return (
        f"TOPIC: {topic}\n\n"
        f"ESTABLISHED LABELS:\n{format_labels(labels)}\n\n"
        f"TOTAL POSTS: {len(posts)}\n\n"
        f"ENRICHED POSTS:\n{to_pretty_json(condensed)}"
    )


def cluster_count_bounds(post_count: int, settings: Settings) -> tuple[int, int]:
    low = settings.min_clusters if post_count >= settings.min_posts_for_full_clustering else 1
    return low, settings.max_clusters


def _preview(ids) -> str:
    ids = list(ids)
    shown = ", ".join(str(i) for i in ids[:10])
    return shown + (f" (+{len(ids) - 10} more)" if len(ids) > 10 else "")


def validate_layout_draft(payload: Any, post_ids: Sequence[str], settings: Settings) -> LayoutDraft:
    """Turn the untrusted layout payload into a LayoutDraft or raise SchemaViolation.

    Checks: complete in-range positions, every post in exactly one non-empty
    cluster, cluster count, unique cluster ids, in-range centers with the minimum
    pairwise separation, and bridge posts drawn from the known ids. No
    correction is attempted.
    """
    if not isinstance(payload, dict):
        raise SchemaViolation("Layout response is not a JSON object.")
    try:
        draft = LayoutDraft.model_validate(payload)
    except ValidationError as exc:
        raise SchemaViolation(f"Layout response is malformed: {exc}") from exc

    expected = set(post_ids)

    missing = [pid for pid in post_ids if pid not in draft.refined_positions]
    if missing:
        raise SchemaViolation(f"Layout has no position for posts: {_preview(missing)}")
    outside = [pid for pid in post_ids if not within_layout_bounds(draft.refined_positions[pid], settings)]
    if outside:
        raise SchemaViolation(f"Layout positions outside the declared ranges: {_preview(outside)}")
    extra = [pid for pid in draft.refined_positions if pid not in expected]
    if extra:
        logger.warning("Discarding positions for unknown posts: %s", _preview(extra))
    positions = {pid: draft.refined_positions[pid] for pid in post_ids}

    low, high = cluster_count_bounds(len(expected), settings)
    if not low <= len(draft.clusters) <= high:
        raise SchemaViolation(f"Layout has {len(draft.clusters)} clusters; expected {low}-{high}.")
    cluster_ids = [cluster.id for cluster in draft.clusters]
    if len(set(cluster_ids)) != len(cluster_ids):
        raise SchemaViolation("Layout cluster ids are not unique.")

    membership: dict[str, list[str]] = defaultdict(list)
    for cluster in draft.clusters:
        if not within_layout_bounds(cluster.center, settings):
            raise SchemaViolation(f"Cluster {cluster.id} center is outside the declared ranges.")
        if not cluster.post_ids:
            raise SchemaViolation(f"Cluster {cluster.id} has no posts.")
        unknown = [pid for pid in cluster.post_ids if pid not in expected]
        if unknown:
            raise SchemaViolation(f"Cluster {cluster.id} lists unknown posts: {_preview(unknown)}")
        for pid in cluster.post_ids:
            membership[pid].append(cluster.id)

    orphans = [pid for pid in post_ids if pid not in membership]
    if orphans:
        raise SchemaViolation(f"Posts not assigned to any cluster: {_preview(orphans)}")
    repeated = [pid for pid, owners in membership.items() if len(owners) > 1]
    if repeated:
        raise SchemaViolation(f"Posts assigned to more than one cluster: {_preview(repeated)}")

    for a, b in combinations(draft.clusters, 2):
        distance = angular_distance(a.center, b.center)
        if distance < settings.min_cluster_separation_deg:
            raise SchemaViolation(
                f"Clusters {a.id} and {b.id} are {distance:.1f} degrees apart; "
                f"minimum is {settings.min_cluster_separation_deg:g}."
            )

    unknown_bridges = [pid for pid in draft.bridge_posts if pid not in expected]
    if unknown_bridges:
        raise SchemaViolation(f"Bridge posts are not known posts: {_preview(unknown_bridges)}")

    centers = {cluster.id: cluster.center for cluster in draft.clusters}
    far = [
        pid
        for pid, owners in membership.items()
        if angular_distance(positions[pid], centers[owners[0]]) > settings.max_post_radius_deg
    ]
    if far:
        logger.warning("%d posts sit further than %g degrees from their cluster center", len(far), settings.max_post_radius_deg)

    return draft.model_copy(update={"refined_positions": positions})


async def synthesize_layout(
    gateway: InferenceGateway,
    posts: Sequence[EnrichedPost],
    labels: Labels,
    topic: str,
    settings: Settings,
) -> LayoutDraft:
    payload = await gateway.complete_json(
        system_prompt=build_system_prompt(settings),
        user_message=build_layout_message(posts, labels, topic),
        max_tokens=settings.layout_max_tokens,
        tier=Tier.DEEP,
    )
    draft = validate_layout_draft(payload, [post.id for post in posts], settings)
    logger.info(
        "Layout synthesized: %d clusters, %d gaps, %d bridge posts",
        len(draft.clusters),
        len(draft.gaps),
        len(draft.bridge_posts),
    )
    return draft
