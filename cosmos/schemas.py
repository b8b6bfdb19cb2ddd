import math
from datetime import datetime
from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

Emotion = Literal[
    "passionate",
    "analytical",
    "frustrated",
    "hopeful",
    "fearful",
    "sarcastic",
    "neutral",
    "aggressive",
    "empathetic",
]
PostType = Literal["argument", "evidence", "question", "anecdote", "meta", "rebuttal"]
RelationshipType = Literal["agrees", "disagrees", "builds_upon", "tangent", "rebuts"]
Reaction = Literal["agree", "disagree", "deeper", "flip"]

EMOTIONS: tuple[str, ...] = get_args(Emotion)
POST_TYPES: tuple[str, ...] = get_args(PostType)
RELATIONSHIP_TYPES: tuple[str, ...] = get_args(RelationshipType)


def _numeric_component(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("coordinate components must be numbers")
    if not math.isfinite(value):
        raise ValueError("coordinate components must be finite")
    return value


CoordinateComponent = Annotated[float, BeforeValidator(_numeric_component)]
Coordinate = tuple[CoordinateComponent, CoordinateComponent, CoordinateComponent]


def _clamp(value: Any, low: float, high: float) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    return min(max(value, low), high)


def _closed_label(value: Any, allowed: tuple[str, ...], fallback: str) -> Any:
    if not isinstance(value, str):
        return fallback if value is None else value
    cleaned = value.strip().lower().replace(" ", "_")
    return cleaned if cleaned in allowed else fallback


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


StrList = Annotated[list[str], BeforeValidator(_as_list)]


class _ModelOutput(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)


class RawPost(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str = Field(min_length=1)
    content: str
    author: str
    parent_id: str | None = None
    depth: int = Field(default=0, ge=0)
    upvotes: int = 0


class Labels(BaseModel):
    stances: list[str] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list)
    roots: list[str] = Field(default_factory=list)

    def covers(self, other: "Labels") -> bool:
        return (
            set(other.stances) <= set(self.stances)
            and set(other.themes) <= set(self.themes)
            and set(other.roots) <= set(self.roots)
        )

    def is_empty(self) -> bool:
        return not (self.stances or self.themes or self.roots)


class LogicalChain(_ModelOutput):
    builds_on: StrList = Field(default_factory=list)
    root_assumption: str = ""
    chain_depth: int = Field(default=0, ge=0, le=5)

    @field_validator("root_assumption", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("chain_depth", mode="before")
    @classmethod
    def _clamp_depth(cls, value: Any) -> Any:
        if isinstance(value, float):
            value = round(value)
        return _clamp(value, 0, 5)


class PerceptionEntry(_ModelOutput):
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    framing: str = ""

    @field_validator("relevance", mode="before")
    @classmethod
    def _clamp_relevance(cls, value: Any) -> Any:
        return _clamp(value, 0.0, 1.0)


class EmbeddingHint(_ModelOutput):
    opinion_axis: float = Field(default=0.0, ge=-1.0, le=1.0)
    abstraction: float = Field(default=0.0, ge=-1.0, le=1.0)
    novelty: float = Field(default=0.0, ge=-1.0, le=1.0)

    @field_validator("opinion_axis", "abstraction", "novelty", mode="before")
    @classmethod
    def _clamp_axis(cls, value: Any) -> Any:
        return _clamp(value, -1.0, 1.0)


class Relationship(_ModelOutput):
    target_id: str
    type: RelationshipType = "tangent"
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    reason: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> Any:
        return _closed_label(value, RELATIONSHIP_TYPES, "tangent")

    @field_validator("strength", mode="before")
    @classmethod
    def _clamp_strength(cls, value: Any) -> Any:
        return _clamp(value, 0.0, 1.0)


class EnrichedPost(_ModelOutput):
    id: str = Field(min_length=1)
    # Raw fields default only for records that matched no raw post.
    content: str = ""
    author: str = ""
    parent_id: str | None = None
    depth: int = 0
    upvotes: int = 0

    stance: str
    themes: StrList = Field(default_factory=list)
    emotion: Emotion = "neutral"
    post_type: PostType = "anecdote"
    importance: int = Field(default=5, ge=1, le=10)
    core_claim: str
    assumptions: StrList = Field(default_factory=list)
    evidence_cited: StrList = Field(default_factory=list)
    logical_chain: LogicalChain = Field(default_factory=LogicalChain)
    perceived_by: dict[str, PerceptionEntry] = Field(default_factory=dict)
    embedding_hint: EmbeddingHint = Field(default_factory=EmbeddingHint)
    relationships: list[Relationship] = Field(default_factory=list)

    @field_validator("emotion", mode="before")
    @classmethod
    def _known_emotion(cls, value: Any) -> Any:
        return _closed_label(value, EMOTIONS, "neutral")

    @field_validator("post_type", mode="before")
    @classmethod
    def _known_post_type(cls, value: Any) -> Any:
        return _closed_label(value, POST_TYPES, "anecdote")

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> Any:
        if isinstance(value, float):
            value = round(value)
        return _clamp(value, 1, 10)

    @field_validator("logical_chain", "embedding_hint", mode="before")
    @classmethod
    def _none_is_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("perceived_by", mode="before")
    @classmethod
    def _none_is_empty_map(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("relationships", mode="before")
    @classmethod
    def _none_is_empty_list(cls, value: Any) -> Any:
        return [] if value is None else value


class CosmosPost(EnrichedPost):
    position: Coordinate
    is_user_post: bool = False


class Cluster(_ModelOutput):
    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    center: Coordinate
    summary: str
    post_ids: list[str]
    root_assumptions: StrList = Field(default_factory=list)
    perceived_as: dict[str, str] = Field(default_factory=dict)


class Gap(_ModelOutput):
    position: Coordinate
    description: str
    why_it_matters: str = ""


class LayoutDraft(_ModelOutput):
    clusters: list[Cluster]
    gaps: list[Gap] = Field(default_factory=list)
    refined_positions: dict[str, Coordinate]
    bridge_posts: list[str] = Field(default_factory=list)
    spatial_summary: str

    @field_validator("gaps", "bridge_posts", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class LayoutMetadata(BaseModel):
    total_posts: int
    processing_time_ms: int
    stance_labels: list[str] = Field(default_factory=list)
    theme_labels: list[str] = Field(default_factory=list)
    root_assumption_labels: list[str] = Field(default_factory=list)


class CosmosLayout(BaseModel):
    topic: str
    source: str = ""
    posts: list[CosmosPost]
    clusters: list[Cluster]
    gaps: list[Gap] = Field(default_factory=list)
    bridge_posts: list[str] = Field(default_factory=list)
    spatial_summary: str = ""
    metadata: LayoutMetadata

    def labels(self) -> Labels:
        return Labels(
            stances=list(self.metadata.stance_labels),
            themes=list(self.metadata.theme_labels),
            roots=list(self.metadata.root_assumption_labels),
        )

    def post_ids(self) -> list[str]:
        return [post.id for post in self.posts]


class ClassifiedPost(EnrichedPost):
    closest_posts: StrList = Field(default_factory=list)
    relationship_to_closest: RelationshipType = "tangent"
    narrator_comment: str = ""

    @field_validator("relationship_to_closest", mode="before")
    @classmethod
    def _known_relationship(cls, value: Any) -> Any:
        return _closed_label(value, RELATIONSHIP_TYPES, "tangent")


class SwipeEvent(BaseModel):
    post_id: str
    reaction: Reaction
    timestamp: float | None = None


class UserPosition(BaseModel):
    position: tuple[float, float, float]
    nearest_cluster: str = ""
    stance_scores: dict[str, float] = Field(default_factory=dict)
    swipe_count: int = 0


class CameraMove(BaseModel):
    fly_to: tuple[float, float, float]
    look_at: tuple[float, float, float] | None = None


class Highlights(BaseModel):
    post_ids: list[str] = Field(default_factory=list)
    cluster_ids: list[str] = Field(default_factory=list)
    edge_ids: list[str] = Field(default_factory=list)


class NarratorResponse(BaseModel):
    text: str
    camera: CameraMove | None = None
    highlights: Highlights | None = None
    follow_up_suggestions: list[str] = Field(default_factory=list)


class ProgressEvent(BaseModel):
    stage: str
    percent: int
    detail: str | None = None


class CacheEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    source: str
    topic: str
    post_count: int
    processing_time_ms: int
    created_at: datetime
