"""
Pydantic models describing device interfaces and their mappings.
"""

import json
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator


PARAMETER_MARKER = "%{"


class InterfaceError(ValueError):
    """Raised when an interface definition is invalid."""
    pass


class InterfaceType(str, Enum):
    """Kind of data an interface carries."""
    PROPERTIES = "properties"
    DATASTREAM = "datastream"


class Ownership(str, Enum):
    """Which side of the connection owns the interface."""
    DEVICE = "device"
    SERVER = "server"


class Aggregation(str, Enum):
    """How the endpoints of an interface are grouped on the wire."""
    INDIVIDUAL = "individual"
    OBJECT = "object"


class Reliability(str, Enum):
    UNRELIABLE = "unreliable"
    GUARANTEED = "guaranteed"
    UNIQUE = "unique"


class Retention(str, Enum):
    DISCARD = "discard"
    VOLATILE = "volatile"
    STORED = "stored"


class DatabaseRetentionPolicy(str, Enum):
    NO_TTL = "no_ttl"
    USE_TTL = "use_ttl"


class MappingType(str, Enum):
    """Wire types a mapping can declare."""
    INTEGER = "integer"
    LONG_INTEGER = "longinteger"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    STRING = "string"
    BINARY_BLOB = "binaryblob"
    DATETIME = "datetime"
    INTEGER_ARRAY = "integerarray"
    LONG_INTEGER_ARRAY = "longintegerarray"
    DOUBLE_ARRAY = "doublearray"
    BOOLEAN_ARRAY = "booleanarray"
    STRING_ARRAY = "stringarray"
    BINARY_BLOB_ARRAY = "binaryblobarray"
    DATETIME_ARRAY = "datetimearray"

    @property
    def is_array(self) -> bool:
        return self.value.endswith("array")

    @property
    def scalar(self) -> 'MappingType':
        """Element type of an array type, or the type itself."""
        if self.is_array:
            return MappingType(self.value[:-len("array")])
        return self


class Mapping(BaseModel):
    """A single endpoint declared by an interface."""
    endpoint: str = Field(description="Endpoint pattern, e.g. /%{sensor_id}/value")
    type: MappingType = Field(description="Wire type of the values on this endpoint")
    reliability: Reliability = Field(default=Reliability.UNRELIABLE)
    retention: Retention = Field(default=Retention.DISCARD)
    database_retention_policy: DatabaseRetentionPolicy = Field(default=DatabaseRetentionPolicy.NO_TTL)
    database_retention_ttl: Optional[int] = Field(default=None)
    expiry: int = Field(default=0, ge=0)
    explicit_timestamp: bool = Field(default=False)
    allow_unset: bool = Field(default=False)
    description: Optional[str] = Field(default=None)
    doc: Optional[str] = Field(default=None)

    @property
    def is_parametric(self) -> bool:
        return PARAMETER_MARKER in self.endpoint

    @property
    def tokens(self) -> List[str]:
        """Endpoint split on '/', keeping the empty leading token."""
        return self.endpoint.split("/")


class InterfaceSchema(BaseModel):
    """
    Description of one interface as returned by Realm Management.
    Determines which normalizer applies and which wire types apply to each path.
    """
    interface_name: str = Field(description="Fully qualified interface name")
    version_major: int = Field(ge=0)
    version_minor: int = Field(ge=0)
    type: InterfaceType
    ownership: Ownership = Field(default=Ownership.DEVICE)
    aggregation: Aggregation = Field(default=Aggregation.INDIVIDUAL)
    explicit_timestamp: bool = Field(default=False)
    has_metadata: bool = Field(default=False)
    description: Optional[str] = Field(default=None)
    doc: Optional[str] = Field(default=None)
    mappings: List[Mapping] = Field(min_length=1)

    @model_validator(mode='after')
    def check_object_prefix(self) -> 'InterfaceSchema':
        """Object aggregated mappings must all live under the same prefix."""
        if self.aggregation == Aggregation.OBJECT:
            prefixes = {m.endpoint.rsplit("/", 1)[0] for m in self.mappings}
            if len(prefixes) != 1:
                raise ValueError(
                    f"Object aggregated interface {self.interface_name} has mappings "
                    f"with different prefixes: {sorted(prefixes)}"
                )
            if self.type != InterfaceType.DATASTREAM:
                raise ValueError("Object aggregation is only allowed on datastream interfaces")
        return self

    @property
    def is_parametric(self) -> bool:
        """True if at least one mapping has a parametric endpoint."""
        return any(m.is_parametric for m in self.mappings)

    @property
    def is_aggregate(self) -> bool:
        return self.aggregation == Aggregation.OBJECT

    @property
    def endpoints(self) -> List[str]:
        return [m.endpoint for m in self.mappings]

    @property
    def object_prefix(self) -> str:
        """Common prefix of an object aggregated interface ('' for root)."""
        return self.mappings[0].endpoint.rsplit("/", 1)[0]

    @classmethod
    def from_dict(cls, interface_dict: dict) -> 'InterfaceSchema':
        """
        Build a schema from a decoded interface document.

        Raises:
            InterfaceError: If the document is not a valid interface
        """
        try:
            return cls.model_validate(interface_dict)
        except ValidationError as e:
            raise InterfaceError(f"Invalid interface: {e}")

    @classmethod
    def from_file(cls, interface_path: str | Path) -> 'InterfaceSchema':
        """
        Load and validate an interface JSON file.

        Args:
            interface_path: Path to the interface JSON file

        Returns:
            InterfaceSchema instance

        Raises:
            FileNotFoundError: If the file doesn't exist
            InterfaceError: If the file is not a valid interface
        """
        interface_path = Path(interface_path)

        if not interface_path.exists():
            raise FileNotFoundError(f"Interface file not found: {interface_path}")

        with open(interface_path, 'r') as f:
            try:
                interface_dict = json.load(f)
            except json.JSONDecodeError as e:
                raise InterfaceError(f"{interface_path} is not valid JSON: {e}")

        return cls.from_dict(interface_dict)
