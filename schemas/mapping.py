"""
Column mapping schemas and submission-time validation
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Iterable
from core.exceptions import ValidationError
import enum


class TransformKind(str, enum.Enum):
    """Closed set of named, parameterized per-column transforms"""
    COPY = "copy"
    TRIM = "trim"
    UPPER = "upper"
    LOWER = "lower"
    CONSTANT = "constant"          # params: value
    DEFAULT = "default"            # params: value
    TO_STRING = "to_string"
    TO_INTEGER = "to_integer"
    TO_DECIMAL = "to_decimal"
    TO_BOOLEAN = "to_boolean"
    VALUE_MAP = "value_map"        # params: values, default?, strict?
    DATE_FORMAT = "date_format"    # params: output_format, input_format?
    TRUNCATE = "truncate"          # params: length


# Parameters each kind cannot run without
REQUIRED_PARAMS: Dict[TransformKind, tuple] = {
    TransformKind.CONSTANT: ("value",),
    TransformKind.DEFAULT: ("value",),
    TransformKind.VALUE_MAP: ("values",),
    TransformKind.DATE_FORMAT: ("output_format",),
    TransformKind.TRUNCATE: ("length",),
}


class MappingEntry(BaseModel):
    """One source column → destination column step"""
    source_field: str = Field(..., min_length=1, max_length=200)
    dest_field: str = Field(..., min_length=1, max_length=200)
    transform_kind: TransformKind = TransformKind.COPY
    transform_params: Dict[str, Any] = Field(default_factory=dict)

    @validator("source_field", "dest_field")
    def strip_field_names(cls, v):
        """Field names are compared after stripping whitespace"""
        v = v.strip()
        if not v:
            raise ValueError("Field name cannot be empty after stripping")
        return v

    @validator("transform_params", pre=True)
    def clean_params(cls, v):
        if v is None:
            return {}
        return v


class JobSpec(BaseModel):
    """Everything needed to create a migration job"""
    name: str = Field(..., min_length=1, max_length=200)
    source_environment_id: str = Field(..., min_length=1)
    dest_environment_id: str = Field(..., min_length=1)
    source_entity: str = Field(..., min_length=1, max_length=200)
    dest_entity: str = Field(..., min_length=1, max_length=200)
    mapping: List[MappingEntry] = Field(default_factory=list)
    source_key_field: Optional[str] = Field(
        None, description="Natural key column in source rows; positional keys when omitted"
    )


def validate_mapping(entries: Iterable[MappingEntry]) -> List[MappingEntry]:
    """
    Check the mapping invariants before a job is created.

    Raises:
        ValidationError: empty mapping, duplicate destination field,
            or a transform missing a required parameter
    """
    entries = list(entries)
    if not entries:
        raise ValidationError(
            "Column mapping must contain at least one entry",
            context={"reason": "empty_mapping"}
        )

    seen = set()
    for entry in entries:
        if entry.dest_field in seen:
            raise ValidationError(
                f"Destination field '{entry.dest_field}' is mapped more than once",
                context={"reason": "duplicate_dest_field", "field_name": entry.dest_field}
            )
        seen.add(entry.dest_field)

        for param in REQUIRED_PARAMS.get(entry.transform_kind, ()):
            if param not in entry.transform_params:
                raise ValidationError(
                    f"Transform '{entry.transform_kind.value}' on '{entry.dest_field}' "
                    f"requires parameter '{param}'",
                    context={"reason": "missing_transform_param", "field_name": entry.dest_field}
                )

        if entry.transform_kind == TransformKind.VALUE_MAP and not isinstance(
            entry.transform_params["values"], dict
        ):
            raise ValidationError(
                f"Transform 'value_map' on '{entry.dest_field}' needs a 'values' object",
                context={"reason": "invalid_transform_param", "field_name": entry.dest_field}
            )

        if entry.transform_kind == TransformKind.TRUNCATE:
            length = entry.transform_params["length"]
            if not isinstance(length, int) or isinstance(length, bool) or length < 0:
                raise ValidationError(
                    f"Transform 'truncate' on '{entry.dest_field}' needs a non-negative integer length",
                    context={"reason": "invalid_transform_param", "field_name": entry.dest_field}
                )

    return entries
