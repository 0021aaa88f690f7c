from __future__ import annotations
import time
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator


class MessageSchemaError(ValueError):
    """Raised when a queue payload does not match any known schema version."""


def _default_target_id() -> str:
    return f"target_{int(time.time() * 1000)}"


class ProfilingTarget(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=_default_target_id)
    nome: str
    cognome: str
    data_nascita: Optional[str] = None
    citta: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    linkedin_url: Optional[str] = None
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None
    website_url: Optional[str] = None
    consenso_profilazione: bool
    data_consenso: str
    note: Optional[str] = None

    @field_validator("nome", "cognome")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("nome and cognome are required")
        return v

    @field_validator("id", mode="before")
    @classmethod
    def _id_or_default(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return _default_target_id()
        return v

    def source_urls(self) -> list[str]:
        urls = [self.website_url, self.linkedin_url, self.facebook_url, self.instagram_url]
        return [u for u in urls if u]


class ProfileRequest(ProfilingTarget):
    """Submission body. Consent is enforced here, before any job exists."""

    sync: bool = False

    @model_validator(mode="after")
    def _consent_required(self) -> "ProfileRequest":
        if not self.consenso_profilazione or not (self.data_consenso or "").strip():
            raise ValueError("consenso_profilazione and data_consenso are required")
        return self

    def to_target(self) -> ProfilingTarget:
        return ProfilingTarget(**self.model_dump(exclude={"sync"}))


# --- queue payloads (discriminated on schema_version) ---

class JobMessageV1(BaseModel):
    schema_version: Literal["1"] = "1"
    job_id: str
    target: ProfilingTarget


class JobMessageV2(BaseModel):
    schema_version: Literal["2"] = "2"
    job_id: str
    target: ProfilingTarget
    user_id: Optional[str] = None
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


JobMessage = Annotated[Union[JobMessageV1, JobMessageV2], Field(discriminator="schema_version")]
_message_adapter: TypeAdapter = TypeAdapter(JobMessage)


def build_job_message(job_id: str, target: ProfilingTarget, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Current producer shape, JSON-safe for the broker."""
    return JobMessageV2(job_id=job_id, target=target, user_id=user_id).model_dump(mode="json")


def parse_job_message(payload: Dict[str, Any]) -> Union[JobMessageV1, JobMessageV2]:
    try:
        return _message_adapter.validate_python(payload)
    except ValidationError as e:
        raise MessageSchemaError(f"invalid job message: {e.error_count()} error(s)") from e


def message_user_id(msg: Union[JobMessageV1, JobMessageV2]) -> Optional[str]:
    return getattr(msg, "user_id", None)
