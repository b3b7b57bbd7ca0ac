"""
Schema driven flattening of interface data trees.

AppEngine returns the data of an interface as a JSON tree whose shape follows
the interface endpoints. These functions walk that tree and rebuild flat,
path addressed values:

- properties: every non-map value is a property at the path leading to it
- individual datastreams: records carrying value/timestamp become Samples
- object aggregates: records carrying a timestamp and sibling values become
  AggregateSamples
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from interfaces import endpoint_matches, parse_rfc3339

from .exceptions import MalformedRecordError, MalformedTimestampError
from .models import AggregateSample, Sample


_RECORD_METADATA = ('timestamp', 'reception_timestamp')


def flatten_properties(tree: Mapping, prefix: str = "") -> Dict[str, Any]:
    """
    Flatten a properties tree into a path -> value map.

    No key is special here: a 'timestamp' or 'value' key is just another
    property.

    Args:
        tree: Decoded JSON object
        prefix: Path of tree itself

    Returns:
        Map of full path to leaf value
    """
    flattened = {}

    for key, value in tree.items():
        path = f"{prefix}/{key}"
        if isinstance(value, Mapping):
            flattened.update(flatten_properties(value, path))
        else:
            flattened[path] = value

    return flattened


def parse_timestamp(value: Any, path: str, field: str) -> datetime:
    """
    Accept an already parsed instant or an RFC 3339 string.

    Raises:
        MalformedTimestampError: If value is neither
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return parse_rfc3339(value)
        except ValueError:
            raise MalformedTimestampError(path, field, value)
    raise MalformedTimestampError(path, field, value)


def _record_timestamps(record: Mapping, path: str) -> tuple:
    if 'timestamp' not in record:
        raise MalformedRecordError(f"Record at {path or '/'} has no timestamp", path=path)

    timestamp = parse_timestamp(record['timestamp'], path, 'timestamp')
    reception_timestamp = None
    if record.get('reception_timestamp') is not None:
        reception_timestamp = parse_timestamp(record['reception_timestamp'], path, 'reception_timestamp')
    return timestamp, reception_timestamp


def parse_sample(record: Any, path: str = "") -> Sample:
    """
    Decode one individual datastream record.

    Raises:
        MalformedRecordError: If the record lacks its value/timestamp pair
        MalformedTimestampError: If a timestamp cannot be parsed
    """
    if not isinstance(record, Mapping) or 'value' not in record:
        raise MalformedRecordError(f"Record at {path or '/'} has no value", path=path)

    timestamp, reception_timestamp = _record_timestamps(record, path)
    return Sample(
        value=record['value'],
        timestamp=timestamp,
        reception_timestamp=reception_timestamp
    )


def _is_leaf_record(node: Mapping) -> bool:
    # A map under 'value' means 'value' is a path segment, not a sample
    return 'value' in node and not isinstance(node['value'], Mapping)


def flatten_datastream(
    tree: Mapping,
    prefix: str = "",
    endpoints: Optional[Iterable[str]] = None
) -> Dict[str, Sample]:
    """
    Flatten an individual datastream snapshot into a path -> Sample map.

    When endpoints are given, a node is a record exactly when its path matches
    one of them. Otherwise a node is a record when it holds a non-map 'value'.
    Non-record nodes are walked through their map children; anything else
    under them is ignored, since parametric trees can have gaps.

    Args:
        tree: Decoded JSON object
        prefix: Path of tree itself
        endpoints: Endpoint patterns of the interface, if known

    Returns:
        Map of full path to Sample

    Raises:
        MalformedRecordError: If a record lacks its value/timestamp pair
        MalformedTimestampError: If a record timestamp cannot be parsed
    """
    endpoints = list(endpoints) if endpoints is not None else None
    return _flatten_datastream(tree, prefix, endpoints)


def _flatten_datastream(node: Mapping, path: str, endpoints: Optional[List[str]]) -> Dict[str, Sample]:
    if endpoints is not None:
        is_record = path != "" and any(endpoint_matches(e, path) for e in endpoints)
    else:
        is_record = _is_leaf_record(node)

    if is_record:
        return {path: parse_sample(node, path)}

    flattened = {}
    for key, child in node.items():
        if isinstance(child, Mapping):
            flattened.update(_flatten_datastream(child, f"{path}/{key}", endpoints))

    return flattened


def build_aggregate(record: Any, path: str = "") -> AggregateSample:
    """
    Build an AggregateSample from one object aggregated record.

    Sibling values are either under a 'value' map or inlined next to the
    timestamps. They are copied in the order they were received.

    Raises:
        MalformedRecordError: If the record has no timestamp or is not an object
        MalformedTimestampError: If a timestamp cannot be parsed
    """
    if not isinstance(record, Mapping):
        raise MalformedRecordError(f"Aggregate record at {path or '/'} is not an object", path=path)

    timestamp, reception_timestamp = _record_timestamps(record, path)

    if isinstance(record.get('value'), Mapping):
        values = dict(record['value'])
    else:
        values = {k: v for k, v in record.items() if k not in _RECORD_METADATA}

    return AggregateSample(values=values, timestamp=timestamp, reception_timestamp=reception_timestamp)


def flatten_aggregate_snapshot(tree: Any, prefix: str = "") -> Dict[str, AggregateSample]:
    """
    Flatten an object aggregated snapshot into a path -> AggregateSample map.

    A list holds the records of the path it sits at, latest first; a map is
    walked through its children.
    """
    if isinstance(tree, list):
        if not tree:
            return {}
        return {prefix or "/": build_aggregate(tree[0], prefix)}

    if not isinstance(tree, Mapping):
        return {}

    if 'timestamp' in tree and not isinstance(tree['timestamp'], (Mapping, list)):
        return {prefix or "/": build_aggregate(tree, prefix)}

    flattened = {}
    for key, child in tree.items():
        flattened.update(flatten_aggregate_snapshot(child, f"{prefix}/{key}"))
    return flattened
