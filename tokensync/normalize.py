"""
Value normalization.

normalize(raw, token_type) -> CanonicalValue

Turns a remote variable value or a local token string into a comparison key
plus a display string suitable for storing as a token value. Pure; raises
MalformedValue when the value does not fit the declared type.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping, Optional, Tuple
import json
import re

from .errors import MalformedValue
from .types import NUMERIC_TYPES, TokenType

DEFAULT_PRECISION = 4
DEFAULT_UNIT = "px"

_HEX_RE = re.compile(r"^#([0-9a-fA-F]{3,4}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_NUM = r"(?:\d+(?:\.\d+)?|\.\d+)"
_RGB_RE = re.compile(
    rf"^rgba?\(\s*({_NUM})\s*,\s*({_NUM})\s*,\s*({_NUM})\s*(?:,\s*({_NUM}%?)\s*)?\)$",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"^([+-]?(?:\d+(?:\.\d*)?|\.\d+))\s*([a-zA-Z%]*)$")

# Types whose values carry no length unit.
_UNITLESS = frozenset({TokenType.OPACITY, TokenType.Z_INDEX, TokenType.LINE_HEIGHT})


@dataclass(frozen=True)
class CanonicalValue:
    """Comparison-ready form of a value.

    ``key`` is what equality is decided on; ``display`` is the string a
    token would store when adopting this value.
    """

    token_type: TokenType
    key: str
    display: str

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CanonicalValue):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


def format_number(value: Any, precision: int = DEFAULT_PRECISION) -> str:
    """Fixed-precision decimal string without trailing zeros."""
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedValue(value, None, "not a number")
    if not d.is_finite():
        raise MalformedValue(value, None, "not a finite number")
    try:
        q = d.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise MalformedValue(value, None, "number too large")
    if q == 0:
        return "0"
    return format(q.normalize(), "f")


# =============================================================================
# Colors
# =============================================================================


def _channel(value: Any, raw: Any) -> int:
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise MalformedValue(raw, TokenType.COLOR, f"bad channel {value!r}")
    if not 0.0 <= f <= 1.0:
        raise MalformedValue(raw, TokenType.COLOR, f"channel {value!r} out of range")
    return int(Decimal(str(f * 255)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _parse_color(raw: Any) -> Tuple[int, int, int, int]:
    if isinstance(raw, Mapping):
        if not all(k in raw for k in ("r", "g", "b")):
            raise MalformedValue(raw, TokenType.COLOR, "expected r, g, b keys")
        alpha = raw.get("a", 1)
        return (
            _channel(raw["r"], raw),
            _channel(raw["g"], raw),
            _channel(raw["b"], raw),
            _channel(1 if alpha is None else alpha, raw),
        )

    if isinstance(raw, (list, tuple)):
        if len(raw) not in (3, 4) or any(isinstance(c, (bool, str)) for c in raw):
            raise MalformedValue(raw, TokenType.COLOR, "expected 3 or 4 channels")
        channels = [_channel(c, raw) for c in raw]
        if len(channels) == 3:
            channels.append(255)
        return channels[0], channels[1], channels[2], channels[3]

    if not isinstance(raw, str):
        raise MalformedValue(raw, TokenType.COLOR)
    s = raw.strip()

    m = _HEX_RE.match(s)
    if m:
        digits = m.group(1)
        if len(digits) in (3, 4):
            digits = "".join(c * 2 for c in digits)
        if len(digits) == 6:
            digits += "ff"
        return (
            int(digits[0:2], 16),
            int(digits[2:4], 16),
            int(digits[4:6], 16),
            int(digits[6:8], 16),
        )

    m = _RGB_RE.match(s)
    if m:
        rgb = []
        for part in m.groups()[:3]:
            v = float(part)
            if v > 255:
                raise MalformedValue(raw, TokenType.COLOR, f"channel {part} out of range")
            rgb.append(int(round(v)))
        alpha_str = m.group(4)
        if alpha_str is None:
            alpha = 1.0
        elif alpha_str.endswith("%"):
            alpha = float(alpha_str[:-1]) / 100
        else:
            alpha = float(alpha_str)
        return rgb[0], rgb[1], rgb[2], _channel(alpha, raw)

    raise MalformedValue(raw, TokenType.COLOR, "expected #hex or rgb()/rgba()")


def _normalize_color(raw: Any) -> CanonicalValue:
    r, g, b, a = _parse_color(raw)
    key = f"#{r:02X}{g:02X}{b:02X}{a:02X}"
    display = key[:7] if a == 0xFF else key
    return CanonicalValue(TokenType.COLOR, key, display)


# =============================================================================
# Numbers
# =============================================================================


def _normalize_numeric(
    raw: Any, token_type: TokenType, precision: int, default_unit: str
) -> CanonicalValue:
    if isinstance(raw, bool) or raw is None:
        raise MalformedValue(raw, token_type)
    if isinstance(raw, (int, float)):
        number, unit = raw, ""
    elif isinstance(raw, str):
        m = _NUMBER_RE.match(raw.strip())
        if not m:
            raise MalformedValue(raw, token_type, "expected a number with optional unit")
        number, unit = m.group(1), m.group(2).lower()
    else:
        raise MalformedValue(raw, token_type)

    if token_type in _UNITLESS:
        if unit == "%" and token_type == TokenType.OPACITY:
            number = Decimal(str(number)) / 100
            unit = ""
        elif unit and not (unit == "px" and token_type == TokenType.LINE_HEIGHT):
            raise MalformedValue(raw, token_type, f"unexpected unit {unit!r}")
        text = format_number(number, precision)
        # Line heights may be absolute (px) or relative; keep them apart.
        return CanonicalValue(token_type, f"{text}{unit}", f"{text}{unit}")

    text = format_number(number, precision)
    key_unit = unit or default_unit
    return CanonicalValue(token_type, f"{text}{key_unit}", f"{text}{unit}")


# =============================================================================
# Everything else
# =============================================================================


def _normalize_text(raw: Any, token_type: TokenType, precision: int) -> CanonicalValue:
    if raw is None:
        raise MalformedValue(raw, token_type, "missing value")
    if isinstance(raw, bool):
        text = "true" if raw else "false"
    elif isinstance(raw, (int, float)):
        text = format_number(raw, precision)
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            raise MalformedValue(raw, token_type, "empty value")
    elif isinstance(raw, (Mapping, list, tuple)):
        # Composite values compare by value equality only.
        text = json.dumps(raw, sort_keys=True, separators=(",", ":"))
    else:
        raise MalformedValue(raw, token_type)
    return CanonicalValue(token_type, text, text)


def normalize(
    raw: Any,
    token_type: TokenType,
    precision: int = DEFAULT_PRECISION,
    default_unit: str = DEFAULT_UNIT,
) -> CanonicalValue:
    if token_type == TokenType.COLOR:
        return _normalize_color(raw)
    if token_type in NUMERIC_TYPES:
        return _normalize_numeric(raw, token_type, precision, default_unit)
    return _normalize_text(raw, token_type, precision)


def try_normalize(
    raw: Any,
    token_type: TokenType,
    precision: int = DEFAULT_PRECISION,
    default_unit: str = DEFAULT_UNIT,
) -> Optional[CanonicalValue]:
    """Like normalize() but returns None instead of raising."""
    try:
        return normalize(raw, token_type, precision, default_unit)
    except MalformedValue:
        return None


def render_raw(raw: Any, precision: int = DEFAULT_PRECISION) -> str:
    """Best-effort string form of a raw value, used for invalid items."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    try:
        return _normalize_text(raw, TokenType.OTHER, precision).display
    except MalformedValue:
        return str(raw)
