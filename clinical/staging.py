# clinical/staging.py
from enum import Enum
from typing import Optional


class CKDStage(str, Enum):
    """CKD stages, mildest first"""
    STAGE_1 = "Stage 1"
    STAGE_2 = "Stage 2"
    STAGE_3A = "Stage 3A"
    STAGE_3B = "Stage 3B"
    STAGE_4 = "Stage 4"
    STAGE_5 = "Stage 5"

    @property
    def severity(self) -> int:
        return list(CKDStage).index(self)


# Inclusive lower eGFR bounds, checked top down
STAGE_THRESHOLDS = [
    (90, CKDStage.STAGE_1),
    (60, CKDStage.STAGE_2),
    (45, CKDStage.STAGE_3A),
    (30, CKDStage.STAGE_3B),
    (15, CKDStage.STAGE_4),
]


def classify_stage(egfr: float) -> CKDStage:
    """Return CKD stage based on eGFR value"""
    if egfr < 0:
        raise ValueError(f"eGFR cannot be negative: {egfr}")
    for lower_bound, stage in STAGE_THRESHOLDS:
        if egfr >= lower_bound:
            return stage
    return CKDStage.STAGE_5


def parse_stage(value: Optional[str]) -> Optional[CKDStage]:
    """
    Read a stored stage label back into a CKDStage.
    Empty means the patient has not been staged yet.
    """
    if value is None or value == "":
        return None
    return CKDStage(value)
