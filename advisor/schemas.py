from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AdviceOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    budget_level: str = Field(alias="budgetLevel", min_length=1, max_length=50)
    concept: str = Field(min_length=1, max_length=100)
    target_age: str = Field(alias="targetAge", min_length=1, max_length=50)
    open_hours: str | None = Field(default=None, alias="openHours", max_length=50)

    def as_job_options(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AdviceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    district_id: int = Field(alias="districtId", ge=1)
    options: AdviceOptions
    question: str = Field(default="", max_length=2000)

    def as_job_input(self) -> dict[str, Any]:
        return {
            "district_id": self.district_id,
            "options": self.options.as_job_options(),
            "question": self.question.strip(),
        }


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
