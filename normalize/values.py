# normalize/values.py
import math


def normalize_result_value(raw) -> float:
    """
    Convert a typed-in result value into a float.
    Accepts numbers and strings using either a comma or a dot as the
    decimal separator.
    """
    if isinstance(raw, bool) or raw is None:
        raise ValueError(f"Result value must be a number, got {raw!r}")

    if isinstance(raw, str):
        text = raw.strip().replace(" ", "").replace(",", ".")
        if not text:
            raise ValueError("Result value cannot be empty")
        try:
            value = float(text)
        except ValueError:
            raise ValueError(f"Result value must be a valid number, got {raw!r}")
    elif isinstance(raw, (int, float)):
        value = float(raw)
    else:
        raise ValueError(f"Result value must be a number, got {raw!r}")

    if not math.isfinite(value):
        raise ValueError(f"Result value must be finite, got {raw!r}")
    return value
