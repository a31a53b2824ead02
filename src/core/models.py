# src/core/models.py - v2
"""Shared Pydantic domain models: principles, samples and partitions.

Wire names are snake_case and map 1:1 onto the REST payloads, except
``SampleStats.revised_count`` which travels as ``revised``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# === PRINCIPLES ===


class Principle(BaseModel):
    """Label definition that samples are annotated against."""

    id: int
    label_name: str
    definition: str = ""
    inclusion_criteria: str = ""
    exclusion_criteria: str = ""


class PrincipleUpdate(BaseModel):
    """Partial update payload for PATCH /principles/{id}."""

    label_name: str | None = None
    definition: str | None = None
    inclusion_criteria: str | None = None
    exclusion_criteria: str | None = None

    def changed_fields(self) -> dict[str, str]:
        """Fields explicitly set by the caller."""
        return self.model_dump(exclude_none=True)


# === SAMPLES ===


class Sample(BaseModel):
    """Annotated text span assigned to exactly one principle."""

    id: str
    principle_id: int
    preceding_text: str = ""
    target_text: str = ""
    following_text: str = ""
    scores: list[float] = Field(default_factory=list, max_length=3)
    llm_justification: str = ""
    llm_evidence_quote: str = ""
    expert_opinion: str = ""
    is_revised: bool = False
    reviser_name: str | None = None
    revision_timestamp: datetime | None = None


class SampleStats(BaseModel):
    """Revision progress for one principle, computed over all its samples."""

    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    revised_count: int = Field(default=0, alias="revised")
    percentage: float = 0.0


class SamplePartition(BaseModel):
    """Samples of one principle under one revision-visibility filter."""

    samples: list[Sample] = Field(default_factory=list)
    stats: SampleStats = Field(default_factory=SampleStats)

    def find(self, sample_id: str) -> Sample | None:
        for sample in self.samples:
            if sample.id == sample_id:
                return sample
        return None

    def with_sample(self, sample_id: str, **changes: object) -> SamplePartition:
        """Copy of the partition with ``changes`` merged into one sample."""
        samples = [
            s.model_copy(update=changes) if s.id == sample_id else s
            for s in self.samples
        ]
        return self.model_copy(update={"samples": samples})


# === AUTH ===


class AccessToken(BaseModel):
    """Response of POST /login/access-token."""

    access_token: str
    token_type: str = "bearer"
