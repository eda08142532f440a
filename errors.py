# errors.py
from typing import Optional, Dict, Any


class PipelineError(Exception):
    """Base exception for result pipeline failures."""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "PIPELINE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class SubmissionValidationError(PipelineError):
    """Rejected input, raised before anything is written."""

    status_code = 400

    def __init__(self, message: str, field: str = "result_value", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field": field, **(details or {})}
        )
        self.field = field


class ReferenceNotFoundError(PipelineError):
    """A patient, doctor or lab test id did not resolve."""

    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} {entity_id} not found",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id}
        )
        self.entity = entity
        self.entity_id = entity_id


class StageConsistencyError(PipelineError):
    """
    The stage update and its notification could not be applied together.
    Neither half is kept. The primary lab result is not part of the
    rollback, so its id travels with the error for the caller to report.
    """

    status_code = 503

    def __init__(self, message: str, patient_id: int, lab_result_id: Optional[int] = None):
        super().__init__(
            message=message,
            code="STAGE_CONSISTENCY_ERROR",
            details={"patient_id": patient_id, "lab_result_id": lab_result_id, "retry": True}
        )
        self.patient_id = patient_id
        self.lab_result_id = lab_result_id
