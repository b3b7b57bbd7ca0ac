"""
Interfaces module: device interface schemas and wire type handling.

An interface describes the set of paths a device exposes, whether they carry
properties or datastreams, and how their values are aggregated. This module
provides:
- Models: Pydantic models for interfaces and mappings
- Paths: Resolution and validation of concrete paths against endpoints
- Coercion: Conversion between loosely typed payloads and typed wire values
- Timestamps: RFC 3339 parsing and formatting
"""

from .models import (
    PARAMETER_MARKER,
    InterfaceError,
    InterfaceType,
    Ownership,
    Aggregation,
    Reliability,
    Retention,
    DatabaseRetentionPolicy,
    MappingType,
    Mapping,
    InterfaceSchema
)

from .paths import (
    SchemaMismatchError,
    endpoint_matches,
    mapping_from_path,
    validate_query
)

from .coercion import (
    CoercionError,
    coerce,
    decoerce,
    to_json_value,
    normalize_json_numbers,
    coerce_object_payload
)

from .timestamps import (
    parse_rfc3339,
    format_rfc3339,
    to_timestamp,
    to_utc,
    Instant
)

__all__ = [
    # Models
    'PARAMETER_MARKER',
    'InterfaceType',
    'Ownership',
    'Aggregation',
    'Reliability',
    'Retention',
    'DatabaseRetentionPolicy',
    'MappingType',
    'Mapping',
    'InterfaceSchema',

    # Paths
    'endpoint_matches',
    'mapping_from_path',
    'validate_query',

    # Coercion
    'coerce',
    'decoerce',
    'to_json_value',
    'normalize_json_numbers',
    'coerce_object_payload',

    # Timestamps
    'parse_rfc3339',
    'format_rfc3339',
    'to_timestamp',
    'to_utc',
    'Instant',

    # Errors
    'InterfaceError',
    'SchemaMismatchError',
    'CoercionError',
]
