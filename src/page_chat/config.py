"""Configuration models for the page chat engine."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class ChunkBand(BaseModel):
    """Chunk geometry used for documents shorter than `max_length` chars."""

    max_length: int | None = Field(default=None, ge=1)
    chunk_size: int = Field(ge=50)
    overlap_percent: int = Field(ge=0, le=50)

    @property
    def overlap(self) -> int:
        return round(self.chunk_size * self.overlap_percent / 100)


def _retrieval_bands() -> list[ChunkBand]:
    return [
        ChunkBand(max_length=20_000, chunk_size=500, overlap_percent=20),
        ChunkBand(max_length=50_000, chunk_size=800, overlap_percent=18),
        ChunkBand(max_length=100_000, chunk_size=1200, overlap_percent=15),
        ChunkBand(max_length=200_000, chunk_size=1800, overlap_percent=12),
        ChunkBand(chunk_size=2500, overlap_percent=10),
    ]


def _truncation_bands() -> list[ChunkBand]:
    return [
        ChunkBand(max_length=30_000, chunk_size=1500, overlap_percent=15),
        ChunkBand(max_length=80_000, chunk_size=2500, overlap_percent=15),
        ChunkBand(max_length=150_000, chunk_size=3500, overlap_percent=15),
        ChunkBand(chunk_size=5000, overlap_percent=15),
    ]


class ChunkingConfig(BaseModel):
    """Configures structure-aware chunking for retrieval and truncation."""

    retrieval_bands: list[ChunkBand] = Field(default_factory=_retrieval_bands)
    truncation_bands: list[ChunkBand] = Field(default_factory=_truncation_bands)
    truncation_floor_chars: int = Field(default=500, ge=0)
    min_fill_ratio: float = Field(default=0.5, ge=0.0, lt=1.0)

    @model_validator(mode="after")
    def _last_band_unbounded(self) -> "ChunkingConfig":
        for bands in (self.retrieval_bands, self.truncation_bands):
            if not bands or bands[-1].max_length is not None:
                raise ValueError("the last chunk band must have no max_length")
        return self


class RoutingConfig(BaseModel):
    """Token-estimate thresholds (exclusive upper bounds) for strategy routing."""

    hybrid_compact_min_tokens: int = Field(default=10_000, ge=1)
    hybrid_standard_min_tokens: int = Field(default=20_000, ge=1)
    pure_retrieval_min_tokens: int = Field(default=30_000, ge=1)

    @model_validator(mode="after")
    def _ascending(self) -> "RoutingConfig":
        if not (
            self.hybrid_compact_min_tokens
            < self.hybrid_standard_min_tokens
            < self.pure_retrieval_min_tokens
        ):
            raise ValueError("routing thresholds must be strictly ascending")
        return self


class RetrievalConfig(BaseModel):
    """Configures nearest-neighbour retrieval over the embedding index."""

    top_k: int = Field(default=4, ge=1)
    score_threshold: float = Field(default=0.5, ge=-1.0, le=1.0)
    separator: str = "\n\n---\n\n"
    max_workers: int = Field(default=8, ge=1)


class SummaryConfig(BaseModel):
    """Configures summary generation."""

    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_input_chars: int = Field(default=100_000, ge=1000)


class ModelSpec(BaseModel):
    """One entry of the model fallback chain."""

    name: str
    display_name: str
    speed: str = ""


def _default_chain() -> list[ModelSpec]:
    return [
        ModelSpec(name="gpt-4o-mini", display_name="GPT-4o mini", speed="Fastest"),
        ModelSpec(name="gpt-4.1-mini", display_name="GPT-4.1 mini", speed="Fast"),
        ModelSpec(name="gpt-4.1-nano", display_name="GPT-4.1 nano", speed="Fast"),
        ModelSpec(name="gpt-4o", display_name="GPT-4o", speed="Balanced"),
    ]


class FallbackConfig(BaseModel):
    """Configures the per-session model fallback chain."""

    models: list[ModelSpec] = Field(default_factory=_default_chain, min_length=1)
    cooldown_seconds: float = Field(default=3.0, ge=0.0)


class SessionConfig(BaseModel):
    """Configures conversation history and direct-mode context limits."""

    history_limit: int = Field(default=20, ge=2)
    direct_context_max_chars: int = Field(default=50_000, ge=1000)
    embedding_model: str = "text-embedding-3-small"


class EngineConfig(BaseModel):
    """Aggregate configuration handed to `ChatEngine`."""

    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
