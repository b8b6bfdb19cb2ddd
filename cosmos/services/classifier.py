import logging
import uuid
from pathlib import Path

from pydantic import ValidationError

from cosmos.schemas import ClassifiedPost, CosmosLayout, Labels
from cosmos.services.errors import SchemaViolation
from cosmos.services.labels import format_labels
from cosmos.services.llm_client import InferenceGateway, Tier
from cosmos.services.utils import dedupe_preserving_order, to_pretty_json
from cosmos.settings import Settings

logger = logging.getLogger(__name__)

PROMPT_PATH = Path(__file__).resolve().parents[1] / "prompts" / "classifier_prompt.txt"
MAX_CLOSEST_POSTS = 4
MIN_CLOSEST_POSTS = 2


def build_classifier_context(layout: CosmosLayout, settings: Settings) -> tuple[list[dict], list[dict]]:
    clusters = [
        {
            "id": cluster.id,
            "label": cluster.label,
            "summary": cluster.summary,
            "center": list(cluster.center),
            "post_ids": cluster.post_ids[: settings.classifier_cluster_sample],
        }
        for cluster in layout.clusters
    ]
    ranked = sorted(layout.posts, key=lambda post: post.importance, reverse=True)
    posts = [
        {
            "id": post.id,
            "stance": post.stance,
            "core_claim": post.core_claim,
            "themes": post.themes,
            "position": list(post.position),
        }
        for post in ranked[: settings.classifier_context_posts]
    ]
    return clusters, posts


def context_post_ids(clusters: list[dict], posts: list[dict]) -> set[str]:
    ids = {post["id"] for post in posts}
    for cluster in clusters:
        ids.update(cluster["post_ids"])
    return ids


def build_classifier_message(text: str, labels: Labels, clusters: list[dict], posts: list[dict]) -> str:
    return (
        f"USER'S TEXT:\n{text}\n\n"
        f"ESTABLISHED LABELS:\n{format_labels(labels)}\n\n"
        f"CLUSTERS:\n{to_pretty_json(clusters)}\n\n"
        f"EXISTING POSTS (most important):\n{to_pretty_json(posts)}"
    )


def _id_list(value) -> list[str]:
    if isinstance(value, (str, int)):
        value = [value]
    if not isinstance(value, list):
        return []
    return dedupe_preserving_order(str(item) for item in value if item not in (None, ""))


async def classify_post(
    gateway: InferenceGateway,
    text: str,
    layout: CosmosLayout,
    settings: Settings,
    labels: Labels | None = None,
    author: str = "user",
    post_id: str | None = None,
) -> ClassifiedPost:
    """Classify one new post against a finalized layout.

    Only the classification is returned; the layout and its labels are never
    modified here. ``closest_posts`` and relationship targets are restricted
    to the ids that were shown to the model.
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("Post text must not be empty.")
    labels = labels or layout.labels()
    clusters, posts = build_classifier_context(layout, settings)
    allowed = context_post_ids(clusters, posts)

    payload = await gateway.complete_json(
        system_prompt=PROMPT_PATH.read_text(),
        user_message=build_classifier_message(text, labels, clusters, posts),
        max_tokens=settings.classifier_max_tokens,
        tier=Tier.FAST,
    )
    if not isinstance(payload, dict):
        raise SchemaViolation("Classifier response is not a JSON object.")

    proposed = _id_list(payload.get("closest_posts"))
    closest = [pid for pid in proposed if pid in allowed][:MAX_CLOSEST_POSTS]
    invented = [pid for pid in proposed if pid not in allowed]
    if invented:
        logger.warning("Classifier proposed ids outside its context: %s", ", ".join(invented))
    required = min(MIN_CLOSEST_POSTS, len(allowed))
    if len(closest) < required:
        raise SchemaViolation(f"Classifier returned {len(closest)} usable closest posts; expected at least {required}.")

    relationships = [
        rel
        for rel in payload.get("relationships") or []
        if isinstance(rel, dict) and str(rel.get("target_id")) in allowed
    ]
    record = {
        **payload,
        "id": post_id or f"user_{uuid.uuid4().hex[:8]}",
        "content": text,
        "author": author,
        "parent_id": None,
        "depth": 0,
        "upvotes": 0,
        "closest_posts": closest,
        "relationships": relationships,
    }
    try:
        classified = ClassifiedPost.model_validate(record)
    except ValidationError as exc:
        raise SchemaViolation(f"Classifier response is malformed: {exc}") from exc
    logger.info("Classified post %s as %s near %s", classified.id, classified.stance, ", ".join(closest))
    return classified
