from datetime import datetime
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from . import config

NonEmptyShortStr = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)
]
FeatureTitleStr = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)
]
LongStr = Annotated[str, StringConstraints(max_length=1000)]
PasswordStr = Annotated[str, StringConstraints(min_length=8, max_length=128)]
EmailType = Annotated[EmailStr, StringConstraints(max_length=254)]
Rating = Annotated[int, Field(ge=1, le=10)]

LINK_TYPE_MARKERS = [
    ("jira", ("jira", "atlassian.net")),
    ("figma", ("figma.com",)),
    ("notion", ("notion.so", "notion.site")),
    ("github", ("github.com",)),
    ("confluence", ("confluence",)),
    ("miro", ("miro.com",)),
    ("google_docs", ("docs.google.com", "drive.google.com")),
    ("linear", ("linear.app",)),
    ("asana", ("asana.com",)),
    ("trello", ("trello.com",)),
]


def detect_link_type(url: str) -> str:
    lowered = url.lower()
    for link_type, markers in LINK_TYPE_MARKERS:
        if any(marker in lowered for marker in markers):
            return link_type
    return "other"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Пользователи ---


class UserBase(BaseModel):
    email: EmailType
    full_name: NonEmptyShortStr


class UserCreate(UserBase):
    password: PasswordStr


class UserOut(UserBase):
    id: int
    role: str

    model_config = {"from_attributes": True}


class UserUpdate(BaseModel):
    full_name: NonEmptyShortStr


class UserLogin(BaseModel):
    email: EmailType
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


# --- Фичи ---


class ReferenceLink(BaseModel):
    url: Annotated[str, StringConstraints(min_length=1, max_length=2048)]
    title: Optional[str] = None
    favicon: Optional[str] = None
    type: Optional[str] = None

    @model_validator(mode="after")
    def fill_type(self):
        if not self.type:
            self.type = detect_link_type(self.url)
        return self


class FeatureCreate(BaseModel):
    title: FeatureTitleStr
    description: Optional[LongStr] = None
    effort: Optional[Rating] = None
    impact: Optional[Rating] = None
    reference_links: list[ReferenceLink] = Field(default_factory=list, max_length=10)

    @field_validator("title")
    @classmethod
    def no_markup(cls, value: str) -> str:
        if "<" in value or ">" in value:
            raise ValueError("Title cannot contain < or > characters")
        return " ".join(value.split())


class FeatureOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    effort: Optional[int] = None
    impact: Optional[int] = None
    reference_links: list[ReferenceLink] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class FeatureWithVotes(FeatureOut):
    total_points: int = 0
    vote_count: int = 0


# --- Сессии и участники ---


class SessionCreate(BaseModel):
    project_name: NonEmptyShortStr
    title: Optional[NonEmptyShortStr] = None
    features: Annotated[list[FeatureCreate], Field(min_length=1, max_length=100)]


class PlayerJoin(BaseModel):
    name: NonEmptyShortStr
    role: Optional[NonEmptyShortStr] = None


class PlayerOut(BaseModel):
    id: str
    session_id: str
    name: str
    role: Optional[str] = None
    joined_at: datetime

    model_config = {"from_attributes": True}


class SessionSummary(BaseModel):
    id: str
    project_name: str
    title: Optional[str] = None
    status: str
    owner_id: int
    created_at: datetime

    model_config = {"from_attributes": True}


class SessionOut(SessionSummary):
    features: list[FeatureOut]
    players: list[PlayerOut]


class PlayerProgress(BaseModel):
    player: PlayerOut
    has_voted: bool
    total_allocated: int


# --- Голосование ---


class VoteRecord(BaseModel):
    feature_id: str
    player_id: str
    points_allocated: int

    model_config = {"from_attributes": True}


class VoteItem(BaseModel):
    feature_id: str
    points: Annotated[int, Field(ge=0, le=config.TOTAL_POINTS)]
    note: Optional[Annotated[str, StringConstraints(max_length=500)]] = None


class VoteSubmission(BaseModel):
    player_id: str
    votes: Annotated[list[VoteItem], Field(min_length=1, max_length=100)]

    @field_validator("votes")
    @classmethod
    def unique_features(cls, votes: list[VoteItem]) -> list[VoteItem]:
        feature_ids = [vote.feature_id for vote in votes]
        if len(set(feature_ids)) != len(feature_ids):
            raise ValueError("Cannot vote on the same feature multiple times")
        return votes


class VoteSubmissionResult(BaseModel):
    success: bool
    all_voted: bool


class VoteWithContext(BaseModel):
    """One vote row joined with its feature and player."""

    feature_id: str
    feature_title: str
    feature_effort: Optional[int] = None
    feature_impact: Optional[int] = None
    player_id: str
    player_name: str
    player_role: Optional[str] = None
    points_allocated: int


# --- Результаты ---


class SessionResults(CamelModel):
    session: SessionSummary
    results: list[FeatureWithVotes]
    total_votes: int


class ConsensusMetrics(CamelModel):
    team_alignment: int
    consensus_leader: Optional[FeatureWithVotes] = None
    controversial_features: list[FeatureWithVotes]
    unanimous_winners: list[FeatureWithVotes]


class RoleTopFeature(CamelModel):
    feature_id: str
    feature_title: str
    total_points: int
    voter_count: int


class RoleVotingProfile(CamelModel):
    role: str
    player_count: int
    total_votes: int
    average_points_per_feature: float
    top_features: list[RoleTopFeature]
    voting_variance: float


class VotingAnalysisResponse(CamelModel):
    role_profiles: list[RoleVotingProfile]
    overall_variance: float
    consensus_score: float


class RoleFilteredResult(CamelModel):
    feature_id: str
    feature_title: str
    feature_effort: Optional[int] = None
    feature_impact: Optional[int] = None
    total_points: int
    vote_count: int


class RoleFilteredResults(BaseModel):
    results: list[RoleFilteredResult]
