"""
Pydantic models for device data retrieved from AppEngine.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum

from interfaces import Instant


class Order(str, Enum):
    """Order in which a paginator returns samples."""
    ASCENDING = "ascending"
    DESCENDING = "descending"


class DeviceIdentifierType(str, Enum):
    """Kind of identifier used to address a device."""
    AUTODISCOVER = "autodiscover"
    DEVICE_ID = "device_id"
    ALIAS = "alias"


class Sample(BaseModel):
    """One individual datastream value at one path."""
    value: Any = Field(description="Value of the sample")
    timestamp: Instant = Field(description="Timestamp of the sample, in UTC with nanoseconds")
    reception_timestamp: Optional[Instant] = Field(
        default=None,
        description="When the sample was received by the server"
    )

    model_config = {'arbitrary_types_allowed': True}


class AggregateSample(BaseModel):
    """One object aggregated value: several sibling endpoints sharing a timestamp."""
    values: Dict[str, Any] = Field(description="Sibling endpoint values, in received order")
    timestamp: Instant = Field(description="Timestamp shared by all values")
    reception_timestamp: Optional[Instant] = Field(default=None)

    model_config = {'arbitrary_types_allowed': True}


class PropertyValue(BaseModel):
    """A currently set property value."""
    value: Any


class Cursor(BaseModel):
    """
    Query window and position of a paginator.

    next_window_boundary is unset until the first full page has been fetched.
    """
    window_start: Optional[Instant] = Field(default=None, description="Lower bound of the window")
    window_end: Instant = Field(description="Upper bound of the window")
    next_window_boundary: Optional[Instant] = Field(default=None)
    order: Order = Field(default=Order.ASCENDING)
    page_size: int = Field(gt=0)
    exhausted: bool = Field(default=False)

    model_config = {'arbitrary_types_allowed': True}


class DeviceInterfaceIntrospection(BaseModel):
    """Version of one interface declared by a device."""
    major: int
    minor: int


class DeviceDetails(BaseModel):
    """Device details as returned by AppEngine."""
    device_id: str = Field(alias="id")
    connected: bool = Field(default=False)
    introspection: Dict[str, DeviceInterfaceIntrospection] = Field(default_factory=dict)
    aliases: Dict[str, str] = Field(default_factory=dict)
    total_received_msgs: int = Field(default=0)
    total_received_bytes: int = Field(default=0)
    last_seen_ip: Optional[str] = Field(default=None)
    last_credentials_request_ip: Optional[str] = Field(default=None)
    last_connection: Optional[datetime] = Field(default=None)
    last_disconnection: Optional[datetime] = Field(default=None)
    first_registration: Optional[datetime] = Field(default=None)
    first_credentials_request: Optional[datetime] = Field(default=None)

    model_config = {'populate_by_name': True}
