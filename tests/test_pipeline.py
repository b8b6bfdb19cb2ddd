"""
End-to-end pipeline runs with a scripted gateway: two model calls for a small
discussion, cache hits that skip inference, and up-front input rejection.
"""
import unittest
from itertools import combinations
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.pool import StaticPool

from cosmos.db import build_engine, build_session_factory
from cosmos.schemas import RawPost
from cosmos.services.cache import ResultCache
from cosmos.services.errors import InferenceError, PipelineError, SchemaViolation
from cosmos.services.geometry import angular_distance, within_layout_bounds
from cosmos.services.llm_client import InferenceGateway
from cosmos.services.pipeline import CosmosPipeline
from cosmos.settings import Settings

SOURCE = "https://example.com/r/transit/comments/abc"

RAW_POSTS = [
    {"id": "p1", "content": "Build more trains.", "author": "ana", "upvotes": 40},
    {"id": "p2", "content": "Trains are too expensive.", "author": "bo", "parent_id": "p1", "depth": 1, "upvotes": 12},
    {"id": "p3", "content": "I take the bus every day.", "author": "cy", "upvotes": 3},
]


def _enrichment() -> list[dict]:
    return [
        {
            "id": "p1",
            "content": "model paraphrase",
            "stance": "pro-transit",
            "themes": ["cost", "climate"],
            "emotion": "passionate",
            "post_type": "argument",
            "importance": 8,
            "core_claim": "Rail investment pays off",
            "logical_chain": {"root_assumption": "cities should grow", "chain_depth": 0},
            "embedding_hint": {"opinion_axis": -0.8, "abstraction": 0.5, "novelty": 0.1},
        },
        {
            "id": "p2",
            "stance": "anti-transit",
            "themes": ["cost"],
            "emotion": "frustrated",
            "post_type": "rebuttal",
            "importance": 6,
            "core_claim": "Rail is too costly",
            "logical_chain": {"builds_on": ["p1"], "root_assumption": "budgets are fixed", "chain_depth": 1},
            "relationships": [{"target_id": "p1", "type": "rebuts", "strength": 0.9}],
            "embedding_hint": {"opinion_axis": 0.8, "abstraction": 0.4, "novelty": 0.0},
        },
        {
            "id": "p3",
            "stance": "pro-transit",
            "themes": ["commute"],
            "emotion": "neutral",
            "post_type": "anecdote",
            "importance": 4,
            "core_claim": "Buses work for me",
            "embedding_hint": {"opinion_axis": -0.4, "abstraction": -0.6, "novelty": 0.2},
        },
    ]


def _layout_payload() -> dict:
    return {
        "clusters": [
            {"id": "pro-transit", "label": "Pro transit", "center": [60, 80, 0], "summary": "s", "post_ids": ["p1", "p3"]},
            {"id": "anti-transit", "label": "Costs first", "center": [240, 80, 0], "summary": "s", "post_ids": ["p2"]},
        ],
        "gaps": [],
        "refined_positions": {"p1": [58, 75, 0.1], "p2": [241, 82, 0], "p3": [66, 90, 0.2]},
        "bridge_posts": [],
        "spatial_summary": "Two camps.",
    }


def _classification() -> dict:
    return {
        "stance": "pro-transit",
        "themes": ["commute"],
        "core_claim": "Bus lanes now",
        "closest_posts": ["p1", "p3"],
        "relationship_to_closest": "builds_upon",
        "narrator_comment": "You side with the riders.",
    }


def _gateway(*responses) -> MagicMock:
    gateway = MagicMock()
    gateway.complete_json = AsyncMock(side_effect=list(responses))
    return gateway


def _memory_cache() -> ResultCache:
    engine = build_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return ResultCache(build_session_factory(engine))


class TestProcess(unittest.IsolatedAsyncioTestCase):
    async def test_small_discussion_end_to_end(self):
        settings = Settings(enrichment_batch_size=30)
        gateway = _gateway(_enrichment(), _layout_payload())
        events = []
        previews = []

        layout = await CosmosPipeline(gateway, settings).process(
            RAW_POSTS, "Transit", SOURCE, on_progress=events.append, on_partial_layout=previews.append
        )

        self.assertEqual(gateway.complete_json.await_count, 2)
        self.assertEqual(layout.post_ids(), ["p1", "p2", "p3"])

        # Raw fields survive enrichment untouched.
        for raw, post in zip(RAW_POSTS, layout.posts):
            expected = RawPost.model_validate(raw)
            self.assertEqual(post.content, expected.content)
            self.assertEqual(post.author, expected.author)
            self.assertEqual(post.parent_id, expected.parent_id)
            self.assertEqual(post.depth, expected.depth)
            self.assertEqual(post.upvotes, expected.upvotes)

        # Every post is in exactly one cluster and inside the declared ranges.
        members = [pid for cluster in layout.clusters for pid in cluster.post_ids]
        self.assertEqual(sorted(members), ["p1", "p2", "p3"])
        for post in layout.posts:
            self.assertTrue(within_layout_bounds(post.position, settings))
        for a, b in combinations(layout.clusters, 2):
            self.assertGreaterEqual(angular_distance(a.center, b.center), settings.min_cluster_separation_deg)

        self.assertEqual(layout.metadata.total_posts, 3)
        self.assertEqual(layout.metadata.stance_labels, ["pro-transit", "anti-transit"])
        self.assertEqual(layout.metadata.root_assumption_labels, ["cities should grow", "budgets are fixed"])
        self.assertEqual(layout.source, SOURCE)

        percents = [event.percent for event in events]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(percents[-1], 100)
        self.assertEqual(len(previews), 1)
        self.assertEqual(previews[0].clusters, [])
        self.assertEqual(len(previews[0].posts), 3)

    async def test_empty_discussion_is_rejected_without_calls(self):
        gateway = _gateway()
        with self.assertRaises(PipelineError):
            await CosmosPipeline(gateway, Settings()).process([], "Empty")
        gateway.complete_json.assert_not_awaited()

    async def test_duplicate_ids_are_rejected_without_calls(self):
        gateway = _gateway()
        posts = RAW_POSTS + [{"id": "p1", "content": "again", "author": "zed"}]
        with self.assertRaises(PipelineError):
            await CosmosPipeline(gateway, Settings()).process(posts, "Dupes")
        gateway.complete_json.assert_not_awaited()

    async def test_malformed_post_is_rejected(self):
        with self.assertRaises(PipelineError):
            await CosmosPipeline(_gateway(), Settings()).process([{"id": "p1"}], "Broken")

    async def test_cross_batch_record_keeps_source_fields(self):
        settings = Settings(enrichment_batch_size=2)
        first_batch, second_batch = _enrichment()[:2], _enrichment()[2:]
        stray = {**_enrichment()[2], "content": "HALLUCINATED", "author": "model", "upvotes": 0}
        gateway = _gateway(first_batch + [stray], second_batch, _layout_payload())

        layout = await CosmosPipeline(gateway, settings).process(RAW_POSTS, "Transit")

        self.assertEqual(gateway.complete_json.await_count, 3)
        for raw, post in zip(RAW_POSTS, layout.posts):
            expected = RawPost.model_validate(raw)
            self.assertEqual(post.id, expected.id)
            self.assertEqual(post.content, expected.content)
            self.assertEqual(post.author, expected.author)
            self.assertEqual(post.upvotes, expected.upvotes)

    async def test_client_failure_surfaces_as_inference_error(self):
        client = MagicMock()
        client.post = AsyncMock(side_effect=RuntimeError("connection reset"))
        gateway = InferenceGateway(Settings(anthropic_api_key="test-key"), client=client, sleep=AsyncMock())

        with self.assertRaises(InferenceError):
            await CosmosPipeline(gateway, Settings()).process(RAW_POSTS, "Transit")
        self.assertEqual(client.post.await_count, 3)

    async def test_layout_violation_fails_the_run(self):
        payload = _layout_payload()
        payload["clusters"][1]["post_ids"] = []
        gateway = _gateway(_enrichment(), payload)
        with self.assertRaises(SchemaViolation):
            await CosmosPipeline(gateway, Settings()).process(RAW_POSTS, "Transit")


class TestProcessSource(unittest.IsolatedAsyncioTestCase):
    async def test_cache_hit_skips_fetch_and_inference(self):
        cache = _memory_cache()
        fetch = AsyncMock(return_value=("Transit", RAW_POSTS))
        first = await CosmosPipeline(_gateway(_enrichment(), _layout_payload()), Settings(), cache).process_source(SOURCE, fetch)

        gateway = _gateway()
        events = []
        second = await CosmosPipeline(gateway, Settings(), cache).process_source(SOURCE, fetch, on_progress=events.append)

        self.assertEqual(second, first)
        fetch.assert_awaited_once()
        gateway.complete_json.assert_not_awaited()
        self.assertEqual(events[-1].percent, 100)

    async def test_refresh_bypasses_cache(self):
        cache = _memory_cache()
        fetch = AsyncMock(return_value=("Transit", RAW_POSTS))
        await CosmosPipeline(_gateway(_enrichment(), _layout_payload()), Settings(), cache).process_source(SOURCE, fetch)

        gateway = _gateway(_enrichment(), _layout_payload())
        await CosmosPipeline(gateway, Settings(), cache).process_source(SOURCE, fetch, refresh=True)
        self.assertEqual(gateway.complete_json.await_count, 2)
        self.assertEqual(fetch.await_count, 2)

    async def test_runs_without_a_cache(self):
        fetch = AsyncMock(return_value=("Transit", RAW_POSTS))
        layout = await CosmosPipeline(_gateway(_enrichment(), _layout_payload()), Settings()).process_source(SOURCE, fetch)
        self.assertEqual(len(layout.posts), 3)

    async def test_failed_run_is_not_cached(self):
        cache = _memory_cache()
        fetch = AsyncMock(return_value=("Transit", RAW_POSTS))
        with self.assertRaises(SchemaViolation):
            await CosmosPipeline(_gateway(_enrichment(), {"clusters": []}), Settings(), cache).process_source(SOURCE, fetch)
        self.assertIsNone(cache.get(SOURCE))


class TestAddUserPost(unittest.IsolatedAsyncioTestCase):
    async def test_user_post_is_classified_and_stored(self):
        cache = _memory_cache()
        fetch = AsyncMock(return_value=("Transit", RAW_POSTS))
        await CosmosPipeline(_gateway(_enrichment(), _layout_payload()), Settings(), cache).process_source(SOURCE, fetch)

        pipeline = CosmosPipeline(_gateway(_classification()), Settings(), cache)
        classified, augmented = await pipeline.add_user_post(SOURCE, "We need bus lanes.", author="dee")

        self.assertEqual(classified.closest_posts, ["p1", "p3"])
        self.assertEqual(augmented.posts[-1].id, classified.id)
        self.assertIn(classified.id, augmented.clusters[0].post_ids)
        self.assertEqual(cache.get(SOURCE), augmented)

    async def test_requires_a_cached_layout(self):
        with self.assertRaises(PipelineError):
            await CosmosPipeline(_gateway(), Settings(), _memory_cache()).add_user_post(SOURCE, "hello")
