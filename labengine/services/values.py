import math
import re
from datetime import date

from labengine.services.errors import SchemaError

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
THOUSANDS_RE = re.compile(r"^[-+]?\d{1,3}(,\d{3})+(\.\d+)?$")

# Factor that converts one unit into its SI base unit.
UNIT_FACTORS = {
    # length (m)
    "m": 1.0,
    "cm": 0.01,
    "mm": 0.001,
    "in": 0.0254,
    "ft": 0.3048,
    # area (m2)
    "m2": 1.0,
    "cm2": 1e-4,
    "mm2": 1e-6,
    "in2": 0.00064516,
    # volume (m3)
    "m3": 1.0,
    "cm3": 1e-6,
    "mm3": 1e-9,
    "l": 0.001,
    "ml": 1e-6,
    "ft3": 0.028316846592,
    # mass (kg)
    "kg": 1.0,
    "g": 0.001,
    "t": 1000.0,
    "lb": 0.45359237,
    # force (N)
    "n": 1.0,
    "kn": 1000.0,
    "lbf": 4.4482216152605,
    # density (kg/m3)
    "kg/m3": 1.0,
    "g/cm3": 1000.0,
    "t/m3": 1000.0,
    "pcf": 16.018463373960138,
    # stress (Pa)
    "pa": 1.0,
    "kpa": 1000.0,
    "mpa": 1e6,
    "n/mm2": 1e6,
    "psi": 6894.757293168361,
    # dimensionless or counted quantities are not converted
    "": 1.0,
    "%": 1.0,
    "count": 1.0,
    "blows": 1.0,
    "days": 1.0,
    "s": 1.0,
    "min": 1.0,
    "degc": 1.0,
    "ratio": 1.0,
}

_UNIT_ALIASES = {
    "²": "2",
    "³": "3",
    "°": "deg",
    "·": "",
    " ": "",
}


def unit_key(unit):
    if unit is None:
        return ""
    text = str(unit).strip().lower()
    for old, new in _UNIT_ALIASES.items():
        text = text.replace(old, new)
    if text in ("c", "degreesc"):
        text = "degc"
    return text


def check_unit(unit):
    key = unit_key(unit)
    if key not in UNIT_FACTORS:
        raise SchemaError(f"Unsupported unit: {unit!r}")
    return key


def to_si(value, unit):
    if value is None:
        return None
    return value * UNIT_FACTORS[check_unit(unit)]


def from_si(value, unit):
    if value is None:
        return None
    return value / UNIT_FACTORS[check_unit(unit)]


def parse_number(val):
    """Return a finite float for ``val`` or None when it is blank.

    Raises ValueError for text that is not a finite number.
    """
    if val is None:
        return None
    if isinstance(val, bool):
        raise ValueError("Boolean is not a number")
    if isinstance(val, (int, float)):
        out = float(val)
    else:
        text = str(val).strip()
        if not text:
            return None
        if "," in text:
            if not THOUSANDS_RE.match(text):
                raise ValueError("Use '.' as the decimal separator")
            text = text.replace(",", "")
        out = float(text)
    if not math.isfinite(out):
        raise ValueError("Number must be finite")
    return out


def parse_iso_date(val):
    text = str(val).strip()
    if not ISO_DATE_RE.match(text):
        raise ValueError("Date must be YYYY-MM-DD")
    return date.fromisoformat(text).isoformat()


def is_blank(val):
    return val is None or (isinstance(val, str) and not val.strip())


def is_number(val):
    return isinstance(val, (int, float)) and not isinstance(val, bool) and math.isfinite(val)


def round_to(val, precision):
    if val is None:
        return None
    out = round(float(val), int(precision))
    # avoid -0.0 in stored results
    return out + 0.0


def safe_div(a, b):
    if a is None or b is None or b == 0:
        return None
    return a / b


def pct(a, b):
    v = safe_div(a, b)
    if v is None:
        return None
    return v * 100.0


def fmt(val, precision=3):
    if val is None:
        return ""
    if isinstance(val, str):
        return val
    return f"{float(val):.{precision}f}".rstrip("0").rstrip(".")
