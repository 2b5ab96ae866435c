from __future__ import annotations

from typing import List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PRODUCT_DESCRIPTION_LEN = 4000
MAX_LIST_ITEMS = 60


class Territory(BaseModel):
    states: List[str] = Field(default_factory=list)

    @field_validator("states", mode="before")
    @classmethod
    def _strip_states(cls, v):
        if v is None:
            return []
        return [s.strip() for s in v if isinstance(s, str) and s.strip()]


class DiscoveryCriteria(BaseModel):
    """Sales criteria shared by session creation and discovery requests."""

    model_config = ConfigDict(populate_by_name=True)

    product_description: str | None = Field(default=None, alias="productDescription")
    territory: Territory = Field(default_factory=Territory)
    target_categories: List[str] = Field(default_factory=list, alias="targetCategories")
    competitors: List[str] = Field(default_factory=list)
    company_domain: str | None = Field(default=None, alias="companyDomain")

    @field_validator("product_description")
    @classmethod
    def validate_product_description(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if len(v) > MAX_PRODUCT_DESCRIPTION_LEN:
            raise ValueError(
                f"productDescription must be at most {MAX_PRODUCT_DESCRIPTION_LEN} characters"
            )
        return v or None

    @field_validator("target_categories", "competitors", mode="before")
    @classmethod
    def _clean_list(cls, v):
        if v is None:
            return []
        cleaned = [s.strip() for s in v if isinstance(s, str) and s.strip()]
        return cleaned[:MAX_LIST_ITEMS]

    def to_criteria_json(self) -> dict:
        return {
            "productDescription": self.product_description,
            "territory": {"states": list(self.territory.states)},
            "targetCategories": list(self.target_categories),
            "competitors": list(self.competitors),
            "companyDomain": self.company_domain,
        }


class CreateSessionRequest(DiscoveryCriteria):
    pass


class DiscoveryRequest(DiscoveryCriteria):
    session_id: UUID = Field(alias="sessionId")
    limit: int | None = None


class CandidateProspect(BaseModel):
    """
    One organization proposed by the discovery model.

    Only `name` and `state` are required; everything else is best-effort.
    """

    name: str
    state: str
    city: str | None = None
    score: int = 75
    angles: List[str] = Field(default_factory=list)
    reasoning: str | None = None

    @field_validator("name", "state")
    @classmethod
    def _require_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("city", "reasoning", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            return v.strip() or None
        return str(v)

    @field_validator("score", mode="before")
    @classmethod
    def _coerce_score(cls, v):
        if v is None or v == "":
            return 75
        try:
            score = int(round(float(v)))
        except (TypeError, ValueError):
            return 75
        return max(0, min(score, 100))

    @field_validator("angles", mode="before")
    @classmethod
    def _coerce_angles(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(a).strip() for a in v if str(a).strip()][:5]
