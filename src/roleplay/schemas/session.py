"""Pydantic models for roleplay session configuration and history."""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Channel = Literal["b2b", "b2c"]
Difficulty = Literal["easy", "medium", "hard"]
Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    """Represents a single entry in the conversation history."""

    role: Role
    content: str

    model_config = ConfigDict(frozen=True)


class B2BProfile(BaseModel):
    """Buyer profile for a business-to-business roleplay."""

    persona: str = Field(description="Job title or role of the buyer, e.g. 'CFO'.")
    industry: str
    difficulty: Difficulty = "medium"

    model_config = ConfigDict(frozen=True, extra="ignore")


class B2CProfile(BaseModel):
    """Buyer profile for a business-to-consumer roleplay."""

    customer: str = Field(description="Kind of customer, e.g. 'first-time'.")
    age: Union[int, str]
    income: str
    motivation: str
    difficulty: Difficulty = "medium"

    model_config = ConfigDict(frozen=True, extra="ignore")


class PersonaConfiguration(BaseModel):
    """Immutable parameters for the simulated buyer, captured at session start."""

    industry: str = ""
    product: str
    target_buyer: Channel = Field(
        default="b2c",
        validation_alias="targetBuyer",
    )
    b2b: Optional[B2BProfile] = None
    b2c: Optional[B2CProfile] = None

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @model_validator(mode="after")
    def _require_channel_profile(self) -> "PersonaConfiguration":
        if self.target_buyer == "b2b" and self.b2b is None:
            raise ValueError("b2b profile is required when targetBuyer is 'b2b'")
        if self.target_buyer == "b2c" and self.b2c is None:
            raise ValueError("b2c profile is required when targetBuyer is 'b2c'")
        return self

    @property
    def channel(self) -> Channel:
        return self.target_buyer

    @property
    def difficulty(self) -> Difficulty:
        profile = self.b2b if self.channel == "b2b" else self.b2c
        assert profile is not None
        return profile.difficulty


__all__ = [
    "B2BProfile",
    "B2CProfile",
    "Channel",
    "ChatMessage",
    "Difficulty",
    "PersonaConfiguration",
    "Role",
]
