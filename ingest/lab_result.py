# ingest/lab_result.py
from datetime import date
from pydantic import BaseModel, Field, field_validator

from normalize.values import normalize_result_value


class LabResultSubmission(BaseModel):
    """One lab result as entered by the recording doctor"""
    patient_id: int = Field(gt=0)
    doctor_id: int = Field(gt=0)
    lab_test_id: int = Field(gt=0)
    result_value: float
    result_date: date = Field(default_factory=date.today)

    @field_validator("result_value", mode="before")
    @classmethod
    def validate_result_value(cls, v):
        return normalize_result_value(v)
