import math
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _finite_score(value: float, field_name: str) -> float:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be a number")
    if not math.isfinite(value):
        raise ValueError(f"{field_name} must be a finite number")
    if value < 0:
        raise ValueError(f"{field_name} must not be negative")
    return value


class UserOut(BaseModel):
    id: str
    username: str
    is_admin: bool


class MatchEditIn(BaseModel):
    """Corrected score of one match."""

    team1_score: float = Field(alias="team1Score")
    team2_score: float = Field(alias="team2Score")
    reason: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @field_validator("team1_score", "team2_score", mode="before")
    @classmethod
    def _reject_bool(cls, value):
        if isinstance(value, bool):
            raise TypeError("score must be a number")
        return value

    @field_validator("team1_score", "team2_score")
    @classmethod
    def _validate_score(cls, value: float, info) -> float:
        return _finite_score(value, info.field_name)

    @field_validator("reason", mode="before")
    @classmethod
    def _normalize_reason(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise TypeError("reason must be a string")
        trimmed = value.strip()
        return trimmed or None


class RecalculationOut(BaseModel):
    success: bool = True
    message: str
    session_id: str = Field(alias="sessionId")
    replayed_matches: int = Field(alias="replayedMatches")
    readback_mismatches: int = Field(default=0, alias="readbackMismatches")

    model_config = ConfigDict(populate_by_name=True)


class MatchEditOut(RecalculationOut):
    match_id: str = Field(alias="matchId")
    match_type: str = Field(alias="matchType")


class MatchScoreIn(BaseModel):
    match_id: str = Field(alias="matchId", min_length=1)
    team1_score: float = Field(alias="team1Score")
    team2_score: float = Field(alias="team2Score")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @field_validator("team1_score", "team2_score", mode="before")
    @classmethod
    def _reject_bool(cls, value):
        if isinstance(value, bool):
            raise TypeError("score must be a number")
        return value

    @field_validator("team1_score", "team2_score")
    @classmethod
    def _validate_score(cls, value: float, info) -> float:
        return _finite_score(value, info.field_name)


class RoundSubmitIn(BaseModel):
    match_scores: List[MatchScoreIn] = Field(alias="matchScores", min_length=1)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @model_validator(mode="after")
    def _unique_matches(self) -> "RoundSubmitIn":
        ids = [score.match_id for score in self.match_scores]
        if len(ids) != len(set(ids)):
            raise ValueError("each match may only be scored once")
        return self


class RoundSubmitOut(RecalculationOut):
    round_number: int = Field(alias="roundNumber")
    session_completed: bool = Field(default=False, alias="sessionCompleted")


class RecalcStatusOut(BaseModel):
    session_id: str = Field(alias="sessionId")
    recalc_status: str = Field(alias="recalcStatus")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    finished_at: Optional[datetime] = Field(default=None, alias="finishedAt")

    model_config = ConfigDict(populate_by_name=True)


class RatingPreviewIn(BaseModel):
    rating: float
    opponent_rating: float = Field(alias="opponentRating")
    matches_played: float = Field(default=0, alias="matchesPlayed", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("rating", "opponent_rating", "matches_played")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("must be a finite number")
        return value


class RatingPreviewOut(BaseModel):
    k_factor: float = Field(alias="kFactor")
    expected_score: float = Field(alias="expectedScore")
    win: float
    draw: float
    loss: float

    model_config = ConfigDict(populate_by_name=True)
