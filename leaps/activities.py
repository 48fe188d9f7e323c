"""
The five LEAPS stages as a closed set of activity definitions.

Each definition carries its payload schema, its admission policy and whether
manual approval credits the ledger. Scoring is a single dispatch over
ActivityCode in compute_points.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, HttpUrl
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import ActivityCode

AMPLIFY_PEERS_SCORING_CAP = 50
AMPLIFY_STUDENTS_SCORING_CAP = 200
LEARN_POINTS_PER_TAG = 20


class AdmissionPolicy(str, Enum):
    OPEN = "open"
    SINGLE_ACTIVE = "single_active"
    ROLLING_QUOTA = "rolling_quota"


class LearnPayload(BaseModel):
    provider: Literal["SPL", "ILS"]
    course_name: str = Field(..., min_length=2)
    completed_at: str
    certificate_url: Optional[str] = None
    certificate_hash: Optional[str] = None


class ExplorePayload(BaseModel):
    reflection: str = Field(..., min_length=150)
    class_date: str
    school: Optional[str] = None
    evidence_files: Optional[list[str]] = None


class SessionLocation(BaseModel):
    venue: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class AmplifyPayload(BaseModel):
    peers_trained: int = Field(..., ge=0, le=AMPLIFY_PEERS_SCORING_CAP)
    students_trained: int = Field(..., ge=0, le=AMPLIFY_STUDENTS_SCORING_CAP)
    session_date: str
    session_start_time: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    location: Optional[SessionLocation] = None
    session_title: Optional[str] = None
    co_facilitators: Optional[list[str]] = None
    attendance_proof_files: Optional[list[str]] = None
    evidence_note: Optional[str] = None


class PresentPayload(BaseModel):
    linkedin_url: HttpUrl
    caption: str = Field(..., min_length=10)
    screenshot_url: Optional[str] = None


class ShinePayload(BaseModel):
    idea_title: str = Field(..., min_length=4)
    idea_summary: str = Field(..., min_length=50)
    attachments: Optional[list[str]] = None


@dataclass(frozen=True)
class ActivityDefinition:
    code: ActivityCode
    name: str
    default_points: int
    payload_model: type[BaseModel]
    admission: AdmissionPolicy = AdmissionPolicy.OPEN
    credits_via_manual_review: bool = True

    def validate_payload(self, payload: Any) -> dict:
        try:
            parsed = self.payload_model.model_validate(payload)
        except PydanticValidationError as e:
            details = [
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ]
            raise ValidationError(f"Invalid payload for {self.code.value}", details=details)
        return parsed.model_dump(mode="json", exclude_none=True)

    def compute_points(self, payload: dict) -> int:
        return compute_points(self.code, payload)


ACTIVITIES: dict[ActivityCode, ActivityDefinition] = {
    ActivityCode.LEARN: ActivityDefinition(
        code=ActivityCode.LEARN,
        name="Learn",
        default_points=LEARN_POINTS_PER_TAG,
        payload_model=LearnPayload,
        admission=AdmissionPolicy.SINGLE_ACTIVE,
        # Learn credit flows only through course-completion webhooks.
        credits_via_manual_review=False,
    ),
    ActivityCode.EXPLORE: ActivityDefinition(
        code=ActivityCode.EXPLORE,
        name="Explore",
        default_points=50,
        payload_model=ExplorePayload,
    ),
    ActivityCode.AMPLIFY: ActivityDefinition(
        code=ActivityCode.AMPLIFY,
        name="Amplify",
        default_points=0,
        payload_model=AmplifyPayload,
        admission=AdmissionPolicy.ROLLING_QUOTA,
    ),
    ActivityCode.PRESENT: ActivityDefinition(
        code=ActivityCode.PRESENT,
        name="Present",
        default_points=20,
        payload_model=PresentPayload,
    ),
    ActivityCode.SHINE: ActivityDefinition(
        code=ActivityCode.SHINE,
        name="Shine",
        default_points=0,
        payload_model=ShinePayload,
    ),
}


def get_activity(code: Any) -> ActivityDefinition:
    if isinstance(code, ActivityCode):
        return ACTIVITIES[code]
    try:
        activity_code = ActivityCode(str(code).upper())
    except ValueError:
        raise ValidationError(f"Unknown activity code: {code}")
    return ACTIVITIES[activity_code]


def single_active_codes() -> list[str]:
    return [d.code.value for d in ACTIVITIES.values() if d.admission == AdmissionPolicy.SINGLE_ACTIVE]


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def amplify_counts(payload: Any) -> tuple[int, int]:
    """(peers_trained, students_trained) from a stored payload, zero when absent."""
    data = payload if isinstance(payload, dict) else {}
    return _as_int(data.get("peers_trained")), _as_int(data.get("students_trained"))


def compute_points(code: ActivityCode, payload: Any) -> int:
    if code == ActivityCode.LEARN:
        return LEARN_POINTS_PER_TAG
    if code == ActivityCode.EXPLORE:
        return 50
    if code == ActivityCode.AMPLIFY:
        peers, students = amplify_counts(payload)
        return min(peers, AMPLIFY_PEERS_SCORING_CAP) * 2 + min(students, AMPLIFY_STUDENTS_SCORING_CAP)
    if code == ActivityCode.PRESENT:
        return 20
    if code == ActivityCode.SHINE:
        return 0
    raise ValueError(f"No scoring rule for {code}")
