#!/usr/bin/env python3
"""
Data model shared by the ports, the refiner and the batch pipeline.

Oracle payloads (verification results, compliance analyses) are pydantic
models so malformed responses fail validation at the port boundary. Run
state is kept in frozen dataclasses that the refiner replaces rather than
mutates.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Which rubric and instruction template apply to an asset."""

    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


class AttemptStatus(str, Enum):
    GENERATING = "generating"
    VERIFYING = "verifying"
    PASSED = "passed"
    FAILED = "failed"


class RunState(str, Enum):
    GENERATING = "generating"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    PASSED = "passed"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


class RunOutcome(str, Enum):
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


# Composite weights the verification oracle is asked to apply
SCORE_WEIGHTS = {
    "identity": 0.40,
    "compliance": 0.30,
    "quality": 0.20,
    "no_new_issues": 0.10,
}
ACCEPTANCE_THRESHOLD = 80.0


class ComponentScores(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    identity: float = Field(ge=0, le=100)
    compliance: float = Field(ge=0, le=100)
    quality: float = Field(ge=0, le=100)
    no_new_issues: float = Field(ge=0, le=100, alias="noNewIssues")

    def weighted_score(self) -> float:
        return round(sum(getattr(self, name) * weight for name, weight in SCORE_WEIGHTS.items()), 2)


class VerificationResult(BaseModel):
    """Scored assessment of one candidate image."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    score: float = Field(ge=0, le=100)
    is_satisfactory: bool = Field(alias="isSatisfactory")
    subject_match: bool = Field(
        alias="subjectMatch",
        validation_alias=AliasChoices("subjectMatch", "productMatch", "subject_match"),
    )
    component_scores: ComponentScores = Field(alias="componentScores")
    critique: str
    improvements: List[str]
    passed_checks: List[str] = Field(alias="passedChecks")
    failed_checks: List[str] = Field(alias="failedChecks")
    thinking_steps: List[str] = Field(default_factory=list, alias="thinkingSteps")

    @property
    def accepted(self) -> bool:
        """Subject mismatch vetoes acceptance whatever the score."""
        return self.is_satisfactory and self.subject_match


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: str = Field(pattern="^(critical|warning|info)$")
    category: str
    message: str
    recommendation: str = ""


class ComplianceAnalysis(BaseModel):
    """Initial audit of an asset, produced outside this package."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    overall_score: float = Field(alias="overallScore")
    status: str = Field(pattern="^(PASS|FAIL)$")
    violations: List[Violation] = Field(default_factory=list)
    fix_recommendations: List[str] = Field(default_factory=list, alias="fixRecommendations")
    generative_prompt: Optional[str] = Field(default=None, alias="generativePrompt")

    @property
    def passed(self) -> bool:
        return self.status == "PASS"


@dataclass
class SubjectMetadata:
    """Listing details that help the generator keep the product identity."""

    title: Optional[str] = None
    asin: Optional[str] = None


@dataclass
class Asset:
    """One listing image. Owned by the caller; the engine writes fixed_image."""

    id: str
    image: bytes
    role: Role
    name: str = ""
    reference: Optional["Asset"] = None
    analysis: Optional[ComplianceAnalysis] = None
    fixed_image: Optional[bytes] = None

    @property
    def best_image(self) -> bytes:
        return self.fixed_image if self.fixed_image is not None else self.image

    @property
    def reference_image(self) -> Optional[bytes]:
        # Only secondary images are cross-referenced against the primary
        if self.role is not Role.SECONDARY or self.reference is None:
            return None
        return self.reference.best_image

    @property
    def needs_fix(self) -> bool:
        return self.analysis is None or not self.analysis.passed


@dataclass(frozen=True)
class Attempt:
    number: int
    status: AttemptStatus
    candidate: Optional[bytes] = None
    verification: Optional[VerificationResult] = None


@dataclass(frozen=True)
class RefinementRun:
    """Snapshot of the refiner's working state for one asset."""

    asset_id: str
    attempt: int = 1
    max_attempts: int = 3
    state: RunState = RunState.GENERATING
    critique: Optional[str] = None
    prior_candidate: Optional[bytes] = None
    attempts: Tuple[Attempt, ...] = field(default_factory=tuple)
    outcome: Optional[RunOutcome] = None


@dataclass(frozen=True)
class RunResult:
    """
    Terminal result of a refinement run.

    ACCEPTED and EXHAUSTED carry an image; ABORTED carries the classified
    error instead. score is the last known verification score, or None when
    the accepted candidate could not be verified.
    """

    asset_id: str
    outcome: RunOutcome
    image: Optional[bytes] = None
    score: Optional[float] = None
    verification: Optional[VerificationResult] = None
    error: Optional[Exception] = None
    attempts: Tuple[Attempt, ...] = field(default_factory=tuple)
    degraded: bool = False

    @property
    def message(self) -> str:
        if self.outcome is RunOutcome.ABORTED:
            return str(self.error) if self.error else "Run aborted"
        if self.outcome is RunOutcome.EXHAUSTED:
            return f"Attempt budget used up; returning last candidate (score {self.score})"
        if self.degraded:
            return "Accepted unverified candidate (verification unavailable)"
        return f"Passed verification (score {self.score})"
