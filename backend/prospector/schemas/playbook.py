"""
Pydantic schema for the synthesized account playbook.

Field names follow the JSON the report consumers expect (camelCase).
"""
from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field, field_validator


def _as_str_list(v) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    return [str(item) for item in v if item is not None and str(item).strip()]


class AccountSnapshot(BaseModel):
    type: str = "Unknown"
    size: str = "Unknown"
    budget: str = "Unknown"
    location: str = "Unknown"
    jurisdiction: str = "Unknown"

    @field_validator("type", "size", "budget", "location", "jurisdiction", mode="before")
    @classmethod
    def _unknown_if_blank(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return "Unknown"
        return str(v)


class PlaybookSection(BaseModel):
    id: str
    heading: str
    content: str = ""
    bullets: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)

    @field_validator("bullets", "sources", mode="before")
    @classmethod
    def _str_lists(cls, v):
        return _as_str_list(v)


class KeyDate(BaseModel):
    date: str = "TBD"
    event: str
    relevance: str = ""

    @field_validator("date", "relevance", mode="before")
    @classmethod
    def _stringify(cls, v):
        return "" if v is None else str(v)


class PlaybookPlan(BaseModel):
    outreachSequence: List[str] = Field(default_factory=list)
    talkingPoints: List[str] = Field(default_factory=list)
    whatToAvoid: List[str] = Field(default_factory=list)
    keyDates: List[KeyDate] = Field(default_factory=list)

    @field_validator("outreachSequence", "talkingPoints", "whatToAvoid", mode="before")
    @classmethod
    def _str_lists(cls, v):
        return _as_str_list(v)


class Playbook(BaseModel):
    title: str
    topInsight: str
    accountSnapshot: AccountSnapshot = Field(default_factory=AccountSnapshot)
    sections: List[PlaybookSection] = Field(min_length=1)
    playbook: PlaybookPlan = Field(default_factory=PlaybookPlan)
    recommendedActions: List[str] = Field(default_factory=list)

    @field_validator("title", "topInsight")
    @classmethod
    def _require_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("recommendedActions", mode="before")
    @classmethod
    def _str_lists(cls, v):
        return _as_str_list(v)
