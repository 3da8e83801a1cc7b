"""Request bodies accepted by the HTTP layer.

Candidates may be sent as names or ``{"name": ...}`` objects and voters as
ids or ``{"voterID": ...}`` objects; both are flattened to plain strings here.
"""
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from voters import normalize_voter_ids

MIN_PASSWORD_LENGTH = 8


def _voter_ids(value: Any) -> Any:
    if not isinstance(value, (list, dict)):
        return value
    return normalize_voter_ids(value)


def _candidate_names(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    return [item.get("name") if isinstance(item, dict) else item for item in value]


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    isOrganizer: bool = False

    @field_validator("email")
    @classmethod
    def email_has_at(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must be a valid address")
        return value.strip().lower()


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class CreateElectionRequest(BaseModel):
    electionName: str = Field(..., min_length=1)
    candidates: List[str] = Field(..., min_length=1)
    startTime: str
    endTime: str
    validVoters: List[str] = Field(default_factory=list)

    @field_validator("candidates", mode="before")
    @classmethod
    def flatten_candidates(cls, value: Any) -> Any:
        return _candidate_names(value)

    @field_validator("validVoters", mode="before")
    @classmethod
    def flatten_voters(cls, value: Any) -> Any:
        return _voter_ids(value)


class UpdateElectionRequest(BaseModel):
    electionName: Optional[str] = Field(None, min_length=1)
    candidates: Optional[List[str]] = Field(None, min_length=1)
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    validVoters: Optional[List[str]] = None

    @field_validator("candidates", mode="before")
    @classmethod
    def flatten_candidates(cls, value: Any) -> Any:
        return _candidate_names(value)

    @field_validator("validVoters", mode="before")
    @classmethod
    def flatten_voters(cls, value: Any) -> Any:
        return _voter_ids(value)


class VoteRequest(BaseModel):
    candidateID: int = Field(..., ge=0)


class ValidateVotersRequest(BaseModel):
    validVoters: List[str] = Field(..., min_length=1)

    @field_validator("validVoters", mode="before")
    @classmethod
    def flatten_voters(cls, value: Any) -> Any:
        return _voter_ids(value)
