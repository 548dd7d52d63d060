from __future__ import annotations
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field

class TimeResult(BaseModel):
    kind: Literal["time"] = "time"
    # range is checked by the ledger so the rejection order stays fixed
    centiseconds: int

class FaultResult(BaseModel):
    kind: Literal["fault"] = "fault"
    fault_code: str = Field(min_length=1, max_length=20)

AttemptResult = Annotated[Union[TimeResult, FaultResult], Field(discriminator="kind")]

class AttemptCreate(BaseModel):
    competitor_id: int
    node_id: int
    attempt_number: int = Field(ge=1, le=2)
    result: AttemptResult
    note: Optional[str] = Field(default=None, max_length=500)

class AttemptUpdate(BaseModel):
    result: AttemptResult
    note: Optional[str] = Field(default=None, max_length=500)

class EventCreate(BaseModel):
    name: str
    slug: str

class CategoryCreate(BaseModel):
    code: str = Field(min_length=1, max_length=10)
    name: str
    description: Optional[str] = None
    display_order: int = 100

class NodeCreate(BaseModel):
    code: str = Field(min_length=1, max_length=20)
    name: str
    sequence: int = 100
    is_relay: bool = False
    counts_to_overall: bool = True
    max_time_centiseconds: Optional[int] = Field(default=None, ge=0)
    note: Optional[str] = None

class CompetitorCreate(BaseModel):
    display_name: str = Field(min_length=1, max_length=200)
    category_code: str = Field(min_length=1)
    club: Optional[str] = Field(default=None, max_length=200)
    start_number: Optional[int] = Field(default=None, ge=0)
    birth_year: Optional[int] = Field(default=None, ge=1900, le=2100)
    notes: Optional[str] = Field(default=None, max_length=500)
    generate_token: bool = False

class CompetitorUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category_code: Optional[str] = Field(default=None, min_length=1)
    club: Optional[str] = Field(default=None, max_length=200)
    start_number: Optional[int] = Field(default=None, ge=0)
    birth_year: Optional[int] = Field(default=None, ge=1900, le=2100)
    notes: Optional[str] = Field(default=None, max_length=500)

class TokenIssue(BaseModel):
    regenerate: bool = True
