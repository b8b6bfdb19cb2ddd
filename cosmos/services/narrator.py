from pathlib import Path

from pydantic import ValidationError

from cosmos.schemas import CosmosLayout, NarratorResponse, SwipeEvent, UserPosition
from cosmos.services.errors import SchemaViolation
from cosmos.services.llm_client import InferenceGateway, Tier
from cosmos.services.utils import to_pretty_json
from cosmos.settings import Settings

PROMPT_PATH = Path(__file__).resolve().parents[1] / "prompts" / "narrator_prompt.txt"


def build_narrator_message(
    question: str,
    layout: CosmosLayout,
    settings: Settings,
    swipe_history: list[SwipeEvent] | None = None,
    user_position: UserPosition | None = None,
) -> str:
    clusters = [
        {
            "id": c.id,
            "label": c.label,
            "center": list(c.center),
            "summary": c.summary,
            "post_count": len(c.post_ids),
        }
        for c in layout.clusters
    ]
    gaps = [{"position": list(g.position), "description": g.description} for g in layout.gaps]
    key_posts = [
        {
            "id": p.id,
            "stance": p.stance,
            "core_claim": p.core_claim,
            "position": list(p.position),
            "emotion": p.emotion,
            "importance": p.importance,
        }
        for p in sorted(layout.posts, key=lambda p: p.importance, reverse=True)[: settings.narrator_context_posts]
    ]

    parts = [
        f"TOPIC: {layout.topic}",
        f"SPATIAL SUMMARY: {layout.spatial_summary}",
        f"CLUSTERS:\n{to_pretty_json(clusters)}",
        f"GAPS:\n{to_pretty_json(gaps)}",
        f"KEY POSTS:\n{to_pretty_json(key_posts)}",
    ]
    if swipe_history:
        recent = [
            {"post_id": s.post_id, "reaction": s.reaction} for s in swipe_history[-settings.narrator_recent_swipes :]
        ]
        parts.append(f"USER'S RECENT REACTIONS:\n{to_pretty_json(recent)}")
    if user_position is not None:
        parts.append(f"USER'S CURRENT POSITION: {user_position.model_dump_json()}")
    parts.append(f"USER'S QUESTION: {question}")
    return "\n\n".join(parts)


async def ask_narrator(
    gateway: InferenceGateway,
    question: str,
    layout: CosmosLayout,
    settings: Settings,
    swipe_history: list[SwipeEvent] | None = None,
    user_position: UserPosition | None = None,
) -> NarratorResponse:
    payload = await gateway.complete_json(
        system_prompt=PROMPT_PATH.read_text(),
        user_message=build_narrator_message(question, layout, settings, swipe_history, user_position),
        max_tokens=settings.narrator_max_tokens,
        tier=Tier.FAST,
    )
    if not isinstance(payload, dict):
        raise SchemaViolation("Narrator response is not a JSON object.")
    try:
        return NarratorResponse.model_validate(payload)
    except ValidationError as exc:
        raise SchemaViolation(f"Narrator response is malformed: {exc}") from exc
