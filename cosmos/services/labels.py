from collections.abc import Iterable

from cosmos.schemas import EnrichedPost, Labels
from cosmos.services.utils import dedupe_preserving_order


def extract_labels(posts: Iterable[EnrichedPost]) -> Labels:
    stances: list[str] = []
    themes: list[str] = []
    roots: list[str] = []
    for post in posts:
        if post.stance:
            stances.append(post.stance)
        themes.extend(theme for theme in post.themes if theme)
        if post.logical_chain.root_assumption:
            roots.append(post.logical_chain.root_assumption)
    return Labels(
        stances=dedupe_preserving_order(stances),
        themes=dedupe_preserving_order(themes),
        roots=dedupe_preserving_order(roots),
    )


def format_labels(labels: Labels) -> str:
    return (
        f"Stances: {', '.join(labels.stances)}\n"
        f"Themes: {', '.join(labels.themes)}\n"
        f"Root assumptions: {', '.join(labels.roots)}"
    )


def merge_labels(earlier: Labels, later: Labels) -> Labels:
    return Labels(
        stances=dedupe_preserving_order([*earlier.stances, *later.stances]),
        themes=dedupe_preserving_order([*earlier.themes, *later.themes]),
        roots=dedupe_preserving_order([*earlier.roots, *later.roots]),
    )
