from collections import Counter
from collections.abc import Sequence

from cosmos.schemas import (
    ClassifiedPost,
    CosmosLayout,
    CosmosPost,
    EnrichedPost,
    Labels,
    LayoutDraft,
    LayoutMetadata,
)
from cosmos.services.geometry import angular_distance, hint_position, spherical_mean
from cosmos.settings import Settings

ENRICHED_FIELDS = set(EnrichedPost.model_fields)


def _metadata(post_count: int, labels: Labels, processing_time_ms: int) -> LayoutMetadata:
    return LayoutMetadata(
        total_posts=post_count,
        processing_time_ms=processing_time_ms,
        stance_labels=list(labels.stances),
        theme_labels=list(labels.themes),
        root_assumption_labels=list(labels.roots),
    )


def assemble_layout(
    topic: str,
    source: str,
    posts: Sequence[EnrichedPost],
    draft: LayoutDraft,
    labels: Labels,
    processing_time_ms: int,
) -> CosmosLayout:
    cosmos_posts = [
        CosmosPost.model_validate({**post.model_dump(), "position": draft.refined_positions[post.id]})
        for post in posts
    ]
    return CosmosLayout(
        topic=topic,
        source=source,
        posts=cosmos_posts,
        clusters=draft.clusters,
        gaps=draft.gaps,
        bridge_posts=draft.bridge_posts,
        spatial_summary=draft.spatial_summary,
        metadata=_metadata(len(cosmos_posts), labels, processing_time_ms),
    )


def preview_layout(
    topic: str,
    source: str,
    posts: Sequence[EnrichedPost],
    labels: Labels,
    processing_time_ms: int,
    settings: Settings,
) -> CosmosLayout:
    """Cluster-less layout placing each post from its embedding hint."""
    cosmos_posts = [
        CosmosPost.model_validate({**post.model_dump(), "position": hint_position(post.embedding_hint, settings)})
        for post in posts
    ]
    return CosmosLayout(
        topic=topic,
        source=source,
        posts=cosmos_posts,
        clusters=[],
        metadata=_metadata(len(cosmos_posts), labels, processing_time_ms),
    )


def _target_cluster(layout: CosmosLayout, anchors: list[str], position) -> str | None:
    if not layout.clusters:
        return None
    owner_of = {pid: cluster.id for cluster in layout.clusters for pid in cluster.post_ids}
    votes = Counter(owner_of[pid] for pid in anchors if pid in owner_of)
    if votes:
        best = max(votes.values())
        # Ties go to the cluster listed first in the layout.
        return next(cluster.id for cluster in layout.clusters if votes.get(cluster.id) == best)
    return min(layout.clusters, key=lambda cluster: angular_distance(cluster.center, position)).id


def augment_layout(layout: CosmosLayout, classified: ClassifiedPost, settings: Settings) -> CosmosLayout:
    """Return a copy of ``layout`` with ``classified`` appended as a user post.

    The post is placed at the spherical mean of its closest posts and joins
    the cluster that holds most of them, so every post stays in exactly one
    cluster. Labels in the metadata are left untouched.
    """
    if classified.id in set(layout.post_ids()):
        raise ValueError(f"Post {classified.id} is already part of the layout.")

    positions = {post.id: post.position for post in layout.posts}
    anchors = [pid for pid in classified.closest_posts if pid in positions]
    if anchors:
        position = spherical_mean([positions[pid] for pid in anchors], settings)
    else:
        position = hint_position(classified.embedding_hint, settings)

    new_post = CosmosPost.model_validate(
        {**classified.model_dump(include=ENRICHED_FIELDS), "position": position, "is_user_post": True}
    )
    target = _target_cluster(layout, anchors, position)
    clusters = [
        cluster.model_copy(update={"post_ids": [*cluster.post_ids, new_post.id]}) if cluster.id == target else cluster
        for cluster in layout.clusters
    ]
    metadata = layout.metadata.model_copy(update={"total_posts": layout.metadata.total_posts + 1})
    return layout.model_copy(update={"posts": [*layout.posts, new_post], "clusters": clusters, "metadata": metadata})
