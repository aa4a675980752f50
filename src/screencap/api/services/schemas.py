"""分類レスポンスのスキーマ（pydantic v2）."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Category = Literal["Study", "Work", "Leisure", "Chores", "Social", "Unknown"]


class ProjectProgress(BaseModel):
    shown: bool
    confidence: float = Field(ge=0, le=1)


class AddictionTriageCandidate(BaseModel):
    addiction_id: str
    likelihood: float = Field(ge=0, le=1)
    evidence: list[str]
    rationale: str


class AddictionTriage(BaseModel):
    tracking_enabled: bool
    potentially_addictive: bool
    candidates: list[AddictionTriageCandidate]


class ClassificationStage1(BaseModel):
    """1段目: カテゴリ・プロジェクト・依存トリアージ."""

    model_config = ConfigDict(extra="ignore")

    category: Category
    subcategories: list[str]
    project: str | None
    project_progress: ProjectProgress
    potential_progress: bool
    tags: list[str]
    confidence: float = Field(ge=0, le=1)
    caption: str
    addiction_triage: AddictionTriage


class ClassificationStage2(BaseModel):
    """2段目: 候補に対する依存判定."""

    model_config = ConfigDict(extra="ignore")

    decision: Literal["none", "confirmed", "candidate"]
    addiction_id: str | None
    confidence: float = Field(ge=0, le=1)
    evidence: list[str]
    manual_prompt: str | None
