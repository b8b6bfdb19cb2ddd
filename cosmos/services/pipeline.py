import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence

from pydantic import ValidationError

from cosmos.schemas import (
    ClassifiedPost,
    CosmosLayout,
    EnrichedPost,
    Labels,
    NarratorResponse,
    ProgressEvent,
    RawPost,
    SwipeEvent,
    UserPosition,
)
from cosmos.services.architect import synthesize_layout
from cosmos.services.cache import ResultCache
from cosmos.services.cartographer import enrich_posts
from cosmos.services.classifier import classify_post
from cosmos.services.errors import PipelineError
from cosmos.services.layout import assemble_layout, augment_layout, preview_layout
from cosmos.services.llm_client import InferenceGateway
from cosmos.services.narrator import ask_narrator
from cosmos.settings import Settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
LayoutCallback = Callable[[CosmosLayout], None]
Fetcher = Callable[[], Awaitable[tuple[str, Sequence[RawPost | dict]]]]


def _emit(on_progress: ProgressCallback | None, stage: str, percent: int, detail: str | None = None) -> None:
    if on_progress is not None:
        on_progress(ProgressEvent(stage=stage, percent=percent, detail=detail))


def _coerce_posts(raw_posts: Sequence[RawPost | dict]) -> list[RawPost]:
    try:
        posts = [post if isinstance(post, RawPost) else RawPost.model_validate(post) for post in raw_posts]
    except ValidationError as exc:
        raise PipelineError(f"Invalid raw post in input: {exc}") from exc
    if not posts:
        raise PipelineError("No posts found in this discussion.")
    duplicates = [pid for pid, count in Counter(post.id for post in posts).items() if count > 1]
    if duplicates:
        raise PipelineError(f"Duplicate post ids in input: {', '.join(duplicates[:10])}")
    return posts


class CosmosPipeline:
    """Runs enrichment, layout synthesis and caching for one discussion at a time.

    The gateway, cache and settings are injected so that concurrent runs for
    different discussions share nothing but the cache backend.
    """

    def __init__(self, gateway: InferenceGateway, settings: Settings, cache: ResultCache | None = None):
        self.gateway = gateway
        self.settings = settings
        self.cache = cache or ResultCache(None)

    async def process(
        self,
        raw_posts: Sequence[RawPost | dict],
        topic: str,
        source: str = "",
        on_progress: ProgressCallback | None = None,
        on_partial_layout: LayoutCallback | None = None,
    ) -> CosmosLayout:
        started = time.monotonic()
        posts = _coerce_posts(raw_posts)

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        def batch_started(index: int, total: int) -> None:
            _emit(on_progress, "Analyzing posts...", 15 + round(index / total * 45), f"Batch {index + 1}/{total}")

        def batch_done(index: int, total: int, enriched: list[EnrichedPost], labels: Labels) -> None:
            if index == 0:
                _emit(on_progress, "Labels established", 25, f"{len(labels.stances)} stances, {len(labels.themes)} themes")
            if on_partial_layout is not None:
                on_partial_layout(preview_layout(topic, source, enriched, labels, elapsed_ms(), self.settings))

        enriched, labels = await enrich_posts(
            self.gateway,
            posts,
            self.settings,
            on_batch_start=batch_started,
            on_batch_done=batch_done,
        )
        if not enriched:
            raise PipelineError("Enrichment produced no posts.")
        _emit(on_progress, "All posts analyzed", 60, f"{len(enriched)} posts enriched")

        _emit(on_progress, "Building spatial layout...", 65)
        draft = await synthesize_layout(self.gateway, enriched, labels, topic, self.settings)
        _emit(on_progress, "Layout computed", 85, f"{len(draft.clusters)} clusters")

        layout = assemble_layout(topic, source, enriched, draft, labels, elapsed_ms())
        logger.info("Processed %r: %d posts in %d ms", topic, len(layout.posts), layout.metadata.processing_time_ms)
        _emit(on_progress, "COSMOS ready", 100)
        return layout

    async def process_source(
        self,
        source: str,
        fetch: Fetcher,
        on_progress: ProgressCallback | None = None,
        on_partial_layout: LayoutCallback | None = None,
        refresh: bool = False,
    ) -> CosmosLayout:
        if not refresh:
            cached = await asyncio.to_thread(self.cache.get, source)
            if cached is not None:
                _emit(on_progress, "COSMOS ready (cached)", 100)
                return cached

        _emit(on_progress, "Fetching discussion...", 5)
        topic, raw_posts = await fetch()
        _emit(on_progress, "Discussion fetched", 10, f"{len(raw_posts)} posts found")
        layout = await self.process(raw_posts, topic, source, on_progress, on_partial_layout)
        await asyncio.to_thread(self.cache.set, source, layout)
        return layout

    async def classify(self, text: str, layout: CosmosLayout, author: str = "user") -> ClassifiedPost:
        return await classify_post(self.gateway, text, layout, self.settings, author=author)

    async def add_user_post(self, source: str, text: str, author: str = "user") -> tuple[ClassifiedPost, CosmosLayout]:
        """Classify ``text`` against the cached layout for ``source`` and store the augmented layout."""
        layout = await asyncio.to_thread(self.cache.get, source)
        if layout is None:
            raise PipelineError(f"No cached layout for {source}.")
        classified = await self.classify(text, layout, author=author)
        augmented = augment_layout(layout, classified, self.settings)
        await asyncio.to_thread(self.cache.set, source, augmented)
        return classified, augmented

    async def narrate(
        self,
        question: str,
        layout: CosmosLayout,
        swipe_history: list[SwipeEvent] | None = None,
        user_position: UserPosition | None = None,
    ) -> NarratorResponse:
        return await ask_narrator(self.gateway, question, layout, self.settings, swipe_history, user_position)
