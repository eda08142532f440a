# clinical/egfr.py
import math
import unicodedata
from datetime import date
from typing import Optional

# MDRD study equation, creatinine in mg/dL
MDRD_CONSTANT = 186
CREATININE_EXPONENT = -1.154
AGE_EXPONENT = -0.203
FEMALE_FACTOR = 0.742
# Population adjustment applied by the reference deployment
ETHNICITY_FACTOR = 1.212

EGFR_MIN = 0
EGFR_MAX = 200

KIND_CREATININE = "creatinine"
KIND_EGFR = "egfr"
KIND_OTHER = "other"


def compute_egfr(creatinine: float, age_years: int, is_female: bool,
                 ethnicity_factor: float = ETHNICITY_FACTOR) -> int:
    """
    Estimate GFR (mL/min/1.73m²) from serum creatinine.
    The result is clamped to [0, 200] and rounded half up.
    """
    if creatinine <= 0:
        raise ValueError(f"Creatinine must be positive, got {creatinine}")
    if age_years < 0:
        raise ValueError(f"Age cannot be negative, got {age_years}")
    if ethnicity_factor <= 0:
        raise ValueError(f"Ethnicity factor must be positive, got {ethnicity_factor}")

    try:
        egfr = MDRD_CONSTANT * creatinine ** CREATININE_EXPONENT * age_years ** AGE_EXPONENT
    except (OverflowError, ZeroDivisionError):
        # age 0 or a vanishing creatinine: the estimate diverges
        egfr = math.inf

    if is_female:
        egfr *= FEMALE_FACTOR
    egfr *= ethnicity_factor

    egfr = max(EGFR_MIN, min(EGFR_MAX, egfr))
    return math.floor(egfr + 0.5)


def age_in_years(birth_date: date, on: date) -> int:
    """Completed years between birth_date and on"""
    years = on.year - birth_date.year
    if (on.month, on.day) < (birth_date.month, birth_date.day):
        years -= 1
    return years


def _fold(text: str) -> str:
    return unicodedata.normalize("NFC", text or "").lower()


def is_creatinine_name(test_name: str) -> bool:
    name = _fold(test_name)
    return "creatinine" in name or "créatinine" in name


def is_egfr_name(test_name: str) -> bool:
    name = _fold(test_name)
    return "dfg" in name or "egfr" in name


def resolve_kind(test) -> str:
    """
    Kind tag of a lab test definition.
    An explicit tag wins; untagged tests are classified by name.
    """
    if test.kind:
        return test.kind
    if is_creatinine_name(test.test_name):
        return KIND_CREATININE
    if is_egfr_name(test.test_name):
        return KIND_EGFR
    return KIND_OTHER


def triggers_egfr(test) -> bool:
    return resolve_kind(test) == KIND_CREATININE


def is_renal_function_test(test) -> bool:
    """Creatinine or eGFR tests, filed under the dfg severity"""
    return resolve_kind(test) in (KIND_CREATININE, KIND_EGFR) \
        or is_creatinine_name(test.test_name) or is_egfr_name(test.test_name)


def pick_egfr_test(tests, configured_name: str) -> Optional[object]:
    """
    Choose the catalog entry that derived eGFR results are filed under:
    the configured name first, then any test tagged egfr.
    """
    for test in tests:
        if test.test_name == configured_name:
            return test
    for test in tests:
        if test.kind == KIND_EGFR:
            return test
    return None
