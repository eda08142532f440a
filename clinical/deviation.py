# clinical/deviation.py
from dataclasses import dataclass
from enum import Enum

# Relative distance from the normal midpoint past which a result is critical
CRITICAL_DEVIATION = 0.30


class Tier(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class DeviationResult:
    is_abnormal: bool
    tier: Tier
    deviation: float
    # True when the value sits below the normal midpoint
    is_low: bool


def evaluate(value: float, test) -> DeviationResult:
    """
    Classify a result against its test's normal range.
    Deviation alone decides the error tier, range membership the warning tier.
    """
    if test.normal_min is None or test.normal_max is None:
        return DeviationResult(is_abnormal=False, tier=Tier.INFO, deviation=0.0, is_low=False)

    normal_mid = (test.normal_min + test.normal_max) / 2
    if normal_mid == 0:
        deviation = 0.0
    else:
        deviation = abs(value - normal_mid) / abs(normal_mid)
    is_abnormal = value < test.normal_min or value > test.normal_max

    if deviation > CRITICAL_DEVIATION:
        tier = Tier.ERROR
    elif is_abnormal:
        tier = Tier.WARNING
    else:
        tier = Tier.INFO

    return DeviationResult(
        is_abnormal=is_abnormal,
        tier=tier,
        deviation=deviation,
        is_low=value < normal_mid,
    )


def format_value(value: float, unit) -> str:
    text = f"{value:g}"
    return f"{text} {unit}" if unit else text


def result_message(test, value: float, result: DeviationResult) -> str:
    reading = format_value(value, test.unit)
    if result.tier == Tier.ERROR:
        level = "low" if result.is_low else "high"
        return f"ALERT: dangerously {level} level for {test.test_name}: {reading}"
    if result.tier == Tier.WARNING:
        return f"Warning: abnormal result for {test.test_name}: {reading}"
    return f"New normal result for {test.test_name}: {reading}"
