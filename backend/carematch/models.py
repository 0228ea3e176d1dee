from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ProviderProfile(BaseModel):
    email: str
    name: str = ""
    experience: str = ""
    location: str = ""
    availability: str = ""
    specializations: str = ""
    rate_expectations: float = Field(default=0.0, ge=0)
    certifications: str = ""
    created_at: Optional[str] = None


class SeekerProfile(BaseModel):
    email: str
    name: str = ""
    care_needs: str = ""
    location: str = ""
    schedule_requirements: str = ""
    budget: float = Field(default=0.0, ge=0)
    special_requirements: str = ""
    phone_number: str = ""
    created_at: Optional[str] = None


class SkillTag(BaseModel):
    email: str
    skill: str
    created_at: Optional[str] = None


class MatchRecord(BaseModel):
    provider_email: str
    seeker_email: str
    status: Literal["proposed", "accepted", "declined"] = "proposed"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ConversationEntry(BaseModel):
    id: int
    email: str
    role: Literal["user", "assistant", "system"]
    content: str
    recipient: str = "admin"
    created_at: str


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    email: Optional[str] = None


class ChatTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatResponse(BaseModel):
    answer: str
    status: Literal["ok", "error", "unidentified"] = "ok"
    email: Optional[str] = None
    stage: Literal["unidentified", "identified", "profile_building", "complete"] = "unidentified"
    tool_name: Optional[str] = None
    conversation: list[ChatTurn] = Field(default_factory=list)


class ProviderMatch(BaseModel):
    provider: ProviderProfile
    skills: list[str] = Field(default_factory=list)


class SeekerMatch(BaseModel):
    seeker: SeekerProfile
    skills: list[str] = Field(default_factory=list)


class ToolInvocation(BaseModel):
    """A single tool call lifted out of a model reply; ``arguments`` is left undecoded."""

    name: str
    arguments: Any = None


class ModelReply(BaseModel):
    content: str = ""
    tool_call: Optional[ToolInvocation] = None
