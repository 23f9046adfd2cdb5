"""
Request Schemas

One pydantic model per endpoint body. Bodies are validated before any
business logic runs; a failure becomes a single ``invalid_request`` error
listing the offending fields.
"""
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from config import FACULTIES, GENERAL_SCOPE


class CreateElectionRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    start_date: datetime = Field(..., description="Scheduled start; naive values are taken as UTC")
    duration: int = Field(..., gt=0, description="Voting window in minutes")
    faculty_scope: str = Field(GENERAL_SCOPE, description="'general' or a faculty id")

    @field_validator("start_date")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("faculty_scope", mode="before")
    @classmethod
    def _known_scope(cls, value) -> str:
        scope = str(value).strip().lower()
        if scope == GENERAL_SCOPE or scope in {str(fid) for fid in FACULTIES.values()}:
            return scope
        raise ValueError("faculty_scope must be 'general' or a known faculty id")


class StatusUpdateRequest(BaseModel):
    status: Literal["upcoming", "ongoing", "ended"]


class CandidateRequest(BaseModel):
    bio: str = Field("", max_length=2000)
    manifesto: str = Field("", max_length=10000)


class VerifyOtpRequest(BaseModel):
    code: str = Field(..., pattern=r"^\d{6}$")


class FaceImageRequest(BaseModel):
    image: str = Field(..., min_length=1, description="Base64 JPEG/PNG, optionally a data URI")


class AcademicClaimRequest(BaseModel):
    faculty: str = Field(..., min_length=1)
    department: str = Field(..., min_length=1)
    matric_no: str = Field(..., min_length=1, max_length=32)
    level: str = Field(..., min_length=1)


class DeviceRequest(BaseModel):
    expo_token: str = Field(..., min_length=1)
