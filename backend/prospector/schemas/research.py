from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TARGET_ACCOUNT_LEN = 300
MAX_CONTEXT_LEN = 4000


class CreateResearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_account: str = Field(alias="targetAccount")
    product_description: Optional[str] = Field(default=None, alias="productDescription")
    territory_states: List[str] = Field(default_factory=list, alias="territoryStates")
    target_categories: List[str] = Field(default_factory=list, alias="targetCategories")
    competitors: List[str] = Field(default_factory=list)
    additional_context: Optional[str] = Field(default=None, alias="additionalContext")
    # Queue the deep-research task right away
    run_now: bool = Field(default=False, alias="runNow")

    @field_validator("target_account")
    @classmethod
    def validate_target_account(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("targetAccount must not be empty")
        if len(v) > MAX_TARGET_ACCOUNT_LEN:
            raise ValueError(f"targetAccount must be at most {MAX_TARGET_ACCOUNT_LEN} characters")
        return v

    @field_validator("additional_context", "product_description")
    @classmethod
    def validate_free_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if len(v) > MAX_CONTEXT_LEN:
            raise ValueError(f"must be at most {MAX_CONTEXT_LEN} characters")
        return v or None

    @field_validator("territory_states", "target_categories", "competitors", mode="before")
    @classmethod
    def _clean_list(cls, v):
        if v is None:
            return []
        return [s.strip() for s in v if isinstance(s, str) and s.strip()]


class DeepResearchRequest(BaseModel):
    """Body of POST /research/deep. ``requestId`` is checked by the route so a
    missing value maps to a 400 with the standard error body."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: Optional[str] = Field(default=None, alias="requestId")
