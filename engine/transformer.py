"""
Apply a column mapping to one raw source row.

Pure and stateless: no I/O, no shared state, safe to run with any fan-out.
"""

from typing import Dict, Any, Optional, Sequence
from datetime import datetime
from decimal import Decimal
import math
from schemas.mapping import MappingEntry, TransformKind
from core.exceptions import TransformError

BLOB_TYPE = "System.Byte[], mscorlib"

TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
FALSE_STRINGS = {"false", "no", "n", "0", "off"}

_MISSING = object()


def is_blob(value: Any) -> bool:
    """Binary values travel as {"$type": "System.Byte[], mscorlib", "$value": <base64>}"""
    return isinstance(value, dict) and value.get("$type") == BLOB_TYPE


def is_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def transform_row(raw_row: Dict[str, Any], mapping: Sequence[MappingEntry]) -> Dict[str, Any]:
    """
    Build the destination row for one source row.

    Entries are applied in mapping order. A source field absent from the
    row is left out of the result, except for kinds that supply their own
    value (constant, default). Nested values are dropped; binary blobs are
    passed through by a plain copy.

    Raises:
        TransformError: naming the destination field of the first entry that
            could not be applied
    """
    result: Dict[str, Any] = {}

    for entry in mapping:
        value = raw_row.get(entry.source_field, _MISSING)
        kind = entry.transform_kind

        if kind == TransformKind.CONSTANT:
            result[entry.dest_field] = entry.transform_params["value"]
            continue

        if kind == TransformKind.DEFAULT:
            if value is _MISSING or value is None or value == "":
                result[entry.dest_field] = entry.transform_params["value"]
            elif is_primitive(value) or is_blob(value):
                result[entry.dest_field] = value
            continue

        if value is _MISSING:
            continue

        if is_blob(value):
            if kind != TransformKind.COPY:
                raise TransformError(
                    f"Field '{entry.dest_field}': transform '{kind.value}' "
                    f"cannot be applied to a binary value",
                    field_name=entry.dest_field,
                    context=_entry_context(entry)
                )
            result[entry.dest_field] = value
            continue

        if not is_primitive(value):
            # Lookups and collections do not map onto a single column
            continue

        result[entry.dest_field] = apply_transform(entry, value)

    return result


def apply_transform(entry: MappingEntry, value: Any) -> Any:
    """Apply one entry's transform to a primitive value"""
    kind = entry.transform_kind
    params = entry.transform_params

    if kind == TransformKind.COPY:
        return value

    if value is None:
        if kind == TransformKind.VALUE_MAP:
            return _map_value(entry, value)
        return None

    try:
        if kind == TransformKind.TRIM:
            return _require_str(value).strip()
        if kind == TransformKind.UPPER:
            return _require_str(value).upper()
        if kind == TransformKind.LOWER:
            return _require_str(value).lower()
        if kind == TransformKind.TO_STRING:
            return _to_string(value)
        if kind == TransformKind.TO_INTEGER:
            return _to_integer(value)
        if kind == TransformKind.TO_DECIMAL:
            return _to_decimal(value)
        if kind == TransformKind.TO_BOOLEAN:
            return _to_boolean(value)
        if kind == TransformKind.VALUE_MAP:
            return _map_value(entry, value)
        if kind == TransformKind.DATE_FORMAT:
            return _format_date(value, params.get("input_format"), params["output_format"])
        if kind == TransformKind.TRUNCATE:
            return _to_string(value)[: params["length"]]
    except TransformError:
        raise
    except (ValueError, TypeError, ArithmeticError) as e:
        raise TransformError(
            f"Field '{entry.dest_field}': cannot apply '{kind.value}' to {value!r}",
            field_name=entry.dest_field,
            context=_entry_context(entry),
            original_exception=e
        )

    raise TransformError(
        f"Field '{entry.dest_field}': unknown transform '{kind}'",
        field_name=entry.dest_field,
        context=_entry_context(entry)
    )


def _entry_context(entry: MappingEntry) -> Dict[str, Any]:
    return {
        "source_field": entry.source_field,
        "dest_field": entry.dest_field,
        "transform_kind": entry.transform_kind.value,
    }


def _require_str(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"expected text, got {type(value).__name__}")
    return value


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    number = Decimal(str(value).strip())
    if not number.is_finite():
        raise ValueError(f"{value!r} is not a finite number")
    if number != number.to_integral_value():
        raise ValueError(f"{value!r} is not a whole number")
    return int(number)


def _to_decimal(value: Any) -> float:
    """
    Destination columns take JSON numbers, so the result is a float:
    digits beyond double precision are rounded away.
    """
    if isinstance(value, bool):
        raise TypeError("boolean is not a number")
    number = Decimal(str(value).strip())
    if not number.is_finite():
        raise ValueError(f"{value!r} is not a finite number")
    result = float(number)
    if math.isinf(result):
        raise ValueError(f"{value!r} is out of range")
    return result


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
    raise ValueError(f"{value!r} is not a boolean")


def _map_value(entry: MappingEntry, value: Any) -> Any:
    values: Dict[str, Any] = entry.transform_params["values"]
    lookup = "" if value is None else _to_string(value)

    if lookup in values:
        return values[lookup]
    if "default" in entry.transform_params:
        return entry.transform_params["default"]
    if entry.transform_params.get("strict", False):
        raise TransformError(
            f"Field '{entry.dest_field}': value {value!r} has no mapping",
            field_name=entry.dest_field,
            context=_entry_context(entry)
        )
    return value


def _format_date(value: Any, input_format: Optional[str], output_format: str) -> str:
    text = _require_str(value).strip()
    if input_format:
        parsed = datetime.strptime(text, input_format)
    else:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return parsed.strftime(output_format)
