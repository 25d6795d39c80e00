from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SubmitOutcome = Literal["success", "processing", "skipped", "error"]


class FormFieldOption(BaseModel):
    label: str | None = None
    value: str


class FormField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    id: str | None = None
    label: str | None = None
    placeholder: str | None = None
    type: str = "text"
    required: bool = False
    options: list[FormFieldOption] = Field(default_factory=list)

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        coerced: list[Any] = []
        for option in value:
            if isinstance(option, str):
                coerced.append({"label": option, "value": option})
            else:
                coerced.append(option)
        return coerced

    @property
    def key(self) -> str | None:
        return self.name or self.id


class SubmitResult(BaseModel):
    outcome: SubmitOutcome
    message: str | None = None


class WorkerStatus(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    idle: bool = False
    last_job_successful: bool = Field(default=False, alias="lastJobSuccessful")
