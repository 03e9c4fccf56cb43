"""
Request models for the InspectOS HTTP API.

Responses are the managers' dicts; only inbound payloads are modelled here.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field


class ScheduleConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    run_time: Optional[str] = Field(default=None, description="HH:MM, local to schedule.timezone")


class GenerationRequest(BaseModel):
    template_ids: List[int]
    assignee_ids: Optional[List[int]] = None
    start_date: date
    end_date: date


class RecordSubmission(BaseModel):
    item_record_id: int = Field(validation_alias=AliasChoices("item_record_id", "task_item_record_id"))
    result: str
    comment: Optional[str] = None
    images: Optional[List[str]] = None


class SubmitResultsRequest(BaseModel):
    records: List[RecordSubmission]


class AdhocTaskRequest(BaseModel):
    title: str
    area_id: int
    assignee_id: int
    due_date: date
    template_id: Optional[int] = None
    is_emergency: bool = False
    custom_check_items: List[str] = Field(default_factory=list)
    planned_date: Optional[date] = None


class HazardTransitionRequest(BaseModel):
    status: str


class HazardRejectRequest(BaseModel):
    comment: str
