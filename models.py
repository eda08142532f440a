# models.py

from typing import List, Optional
from sqlmodel import SQLModel, Field, Relationship
from datetime import date, datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LabTest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    test_name: str = Field(index=True)
    description: Optional[str] = None
    unit: Optional[str] = None
    normal_min: Optional[float] = None
    normal_max: Optional[float] = None
    category: Optional[str] = None
    # creatinine | egfr | other; unset falls back to name matching
    kind: Optional[str] = None


class Doctor(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    specialty: Optional[str] = None
    hospital: Optional[str] = None


class Patient(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_id: int = Field(foreign_key="doctor.id", index=True)
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: date
    gender: str  # M | F | Autre
    ckd_stage: Optional[str] = None
    stage_version: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class LabResult(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    doctor_id: int = Field(foreign_key="doctor.id")
    lab_test_id: int = Field(foreign_key="labtest.id")
    result_value: float
    result_date: date
    derived_from_id: Optional[int] = Field(default=None, foreign_key="labresult.id")


class Workflow(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    ckd_stage: Optional[str] = None
    created_by: int = Field(foreign_key="doctor.id", index=True)
    created_at: datetime = Field(default_factory=utc_now)

    requirements: List["WorkflowRequirement"] = Relationship(
        back_populates="workflow",
        sa_relationship_kwargs={"order_by": "WorkflowRequirement.position"},
    )


class WorkflowRequirement(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: Optional[int] = Field(default=None, foreign_key="workflow.id")
    position: int = 0
    test_name: str
    frequency: str
    alert_type: str  # Inférieur à | Supérieur à
    alert_value: str
    alert_unit: Optional[str] = None
    action: str  # Notification | Email

    workflow: Optional[Workflow] = Relationship(back_populates="requirements")


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    doctor_id: int = Field(foreign_key="doctor.id", index=True)
    lab_test_id: Optional[int] = Field(default=None, foreign_key="labtest.id")
    kind: str = "result"  # result | stage | workflow
    message: str
    severity: str  # info | warning | error | dfg
    is_read: bool = False
    created_at: datetime = Field(default_factory=utc_now)
