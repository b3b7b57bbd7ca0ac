"""
Resolution of concrete data paths against interface endpoint patterns.
"""

from typing import List

from .models import PARAMETER_MARKER, InterfaceError, InterfaceSchema, Mapping


class SchemaMismatchError(InterfaceError):
    """Raised when a path does not resolve against an interface's mappings."""
    pass


def _tokens(path: str) -> List[str]:
    return path.rstrip("/").split("/") if path not in ("", "/") else [""]


def endpoint_matches(endpoint: str, path: str) -> bool:
    """
    Check whether a concrete path matches an endpoint pattern.

    Parametric segments (starting with '%{') match any non-empty segment.

    Args:
        endpoint: Endpoint pattern, e.g. '/%{room}/temperature'
        path: Concrete path, e.g. '/kitchen/temperature'

    Returns:
        True if the path matches the pattern
    """
    endpoint_tokens = _tokens(endpoint)
    path_tokens = _tokens(path)

    if len(endpoint_tokens) != len(path_tokens):
        return False

    for pattern, token in zip(endpoint_tokens, path_tokens):
        if pattern.startswith(PARAMETER_MARKER):
            if not token:
                return False
        elif pattern != token:
            return False

    return True


def mapping_from_path(schema: InterfaceSchema, path: str) -> Mapping:
    """
    Find the mapping a concrete path resolves to.

    Raises:
        SchemaMismatchError: If no mapping matches the path
    """
    for mapping in schema.mappings:
        if endpoint_matches(mapping.endpoint, path):
            return mapping

    raise SchemaMismatchError(
        f"Path {path} does not exist on Interface {schema.interface_name}"
    )


def validate_query(schema: InterfaceSchema, path: str) -> None:
    """
    Validate that samples can be retrieved on path.

    Individual interfaces need a path resolving to exactly one mapping.
    Object aggregated interfaces are queried on the common prefix of their
    mappings, with its parameters resolved.

    Raises:
        SchemaMismatchError: If the path cannot be queried on the interface
    """
    if schema.is_aggregate:
        prefix = schema.object_prefix
        if prefix == "":
            if path in ("", "/"):
                return
            raise SchemaMismatchError(
                f"Interface {schema.interface_name} is an object aggregate on the root path, "
                f"{path} cannot be queried"
            )
        if not path:
            raise SchemaMismatchError(
                f"{schema.interface_name} is an aggregate interface, its path {prefix} should be specified"
            )
        if not endpoint_matches(prefix, path):
            raise SchemaMismatchError(
                f"Cannot resolve path {path} on Interface {schema.interface_name}"
            )
        return

    if not path:
        raise SchemaMismatchError(
            f"You need to specify a valid path for interface {schema.interface_name}"
        )

    mapping_from_path(schema, path)
