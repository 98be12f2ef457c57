"""
Database Schemas for the Evaluation Management System

Each Pydantic model below maps to a MongoDB collection (class name lowercased).
Payload-only models (updates, bulk requests) carry an explicit suffix.
References between documents are the referenced document's id as a string.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

AssociationType = Literal["student", "group", "subgroup", "promotion"]
LineType = Literal["binary", "scale"]
NotationType = Literal["common", "individual", "mixed"]
YearLevel = Literal["BUT1", "BUT2", "BUT3"]

ASSOCIATION_FIELDS: Dict[str, str] = {
    "student": "students",
    "group": "groups",
    "subgroup": "subgroups",
    "promotion": "promotion",
}


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive UTC datetimes; keep everything comparable.
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Directory
class Promotion(BaseModel):
    name: str = Field(..., description="e.g. BUT2 Info")
    year: str = Field(..., description="Year label, e.g. 2025")
    description: Optional[str] = None


class PromotionUpdate(BaseModel):
    name: Optional[str] = None
    year: Optional[str] = None
    description: Optional[str] = None


class Group(BaseModel):
    name: str
    promotion: str = Field(..., description="Owning promotion id")
    description: Optional[str] = None


class GroupUpdate(BaseModel):
    name: Optional[str] = None
    promotion: Optional[str] = None
    description: Optional[str] = None


class SubGroup(BaseModel):
    name: str = Field(..., description="e.g. TP A, Projet X")
    type: str = Field(..., description="e.g. TP, Projet")
    group: str = Field(..., description="Owning group id")
    students: List[str] = Field(default_factory=list)


class SubGroupUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    students: Optional[List[str]] = None


class Student(BaseModel):
    first_name: str
    last_name: str
    year: YearLevel
    student_number: str = Field(..., description="Unique student number")
    promotions: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    current_promotion: Optional[str] = Field(None, description="Active promotion, must be one of promotions")
    current_group: Optional[str] = Field(None, description="Active group, must be one of groups")


class StudentUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    year: Optional[YearLevel] = None
    student_number: Optional[str] = None
    promotions: Optional[List[str]] = None
    groups: Optional[List[str]] = None
    current_promotion: Optional[str] = None
    current_group: Optional[str] = None


class Relation(BaseModel):
    parent_kind: Literal["promotion", "group", "subgroup"]
    parent_id: str
    child_kind: Literal["group", "subgroup", "student"]
    child_id: str


# Rubric
class Line(BaseModel):
    id: Optional[str] = Field(None, description="Stable id assigned when the form is stored")
    title: str
    max_score: float
    type: LineType = Field(..., description="binary = yes/no (max 1), scale = 0 to 8")
    notation_type: NotationType


class Section(BaseModel):
    title: str
    lines: List[Line] = Field(default_factory=list)


class Form(BaseModel):
    professor: Optional[str] = Field(None, description="Defaults to the authenticated user")
    title: str
    association_type: AssociationType
    students: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    subgroups: List[str] = Field(default_factory=list)
    promotion: Optional[str] = None
    sections: List[Section] = Field(default_factory=list)
    valid_from: datetime
    valid_to: datetime

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _utc_window(cls, value):
        return _naive_utc(value)


class FormUpdate(BaseModel):
    title: Optional[str] = None
    association_type: Optional[AssociationType] = None
    students: Optional[List[str]] = None
    groups: Optional[List[str]] = None
    subgroups: Optional[List[str]] = None
    promotion: Optional[str] = None
    sections: Optional[List[Section]] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _utc_window(cls, value):
        return _naive_utc(value)


class FormAssignment(BaseModel):
    level: AssociationType
    target_id: str


# Scores: one variant per notation type
class StudentScore(BaseModel):
    student_id: str
    score: float


class CommonLineScore(BaseModel):
    line_id: str
    notation_type: Literal["common"]
    common_score: Optional[float] = None


class IndividualLineScore(BaseModel):
    line_id: str
    notation_type: Literal["individual"]
    individual_scores: List[StudentScore] = Field(default_factory=list)


class MixedLineScore(BaseModel):
    line_id: str
    notation_type: Literal["mixed"]
    common_score: Optional[float] = None
    individual_scores: List[StudentScore] = Field(default_factory=list)


Score = Annotated[
    Union[CommonLineScore, IndividualLineScore, MixedLineScore],
    Field(discriminator="notation_type"),
]


class Evaluation(BaseModel):
    form: str
    professor: Optional[str] = Field(None, description="Defaults to the authenticated user")
    evaluation_type: AssociationType
    student: Optional[str] = None
    group: Optional[str] = None
    subgroup: Optional[str] = None
    promotion: Optional[str] = None
    target_students: List[str] = Field(default_factory=list)
    scores: List[Score] = Field(..., min_length=1)

    @property
    def target_id(self) -> Optional[str]:
        return getattr(self, self.evaluation_type)


class EvaluationUpdate(BaseModel):
    student: Optional[str] = None
    group: Optional[str] = None
    subgroup: Optional[str] = None
    promotion: Optional[str] = None
    target_students: Optional[List[str]] = None
    scores: Optional[List[Score]] = Field(None, min_length=1)


class BulkEvaluationRequest(BaseModel):
    form: str
    professor: Optional[str] = None
    evaluations: List[Dict[str, Any]] = Field(..., min_length=1)


class ScoreCheck(BaseModel):
    form: str
    scores: List[Score] = Field(default_factory=list)
    evaluation_type: Optional[AssociationType] = None
    student: Optional[str] = None
    group: Optional[str] = None
    subgroup: Optional[str] = None
    promotion: Optional[str] = None
