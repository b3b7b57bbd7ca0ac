"""
DeviceDataRepository: schema aware access to device data.
Resolves interface schemas, validates paths, drives pagination and returns
typed, path addressed values.
"""

import logging
import pandas as pd
from collections.abc import Mapping as MappingABC
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from interfaces import (
    CoercionError,
    InterfaceSchema,
    InterfaceType,
    Ownership,
    SchemaMismatchError,
    coerce,
    coerce_object_payload,
    mapping_from_path,
    normalize_json_numbers,
    to_json_value,
    validate_query
)

from .api_client import AppEngineClient, RealmManagementClient, resolve_device_path
from .config import AppEngineConfig, load_config
from .exceptions import AppEngineError, DecodeError
from .models import (
    AggregateSample,
    Cursor,
    DeviceDetails,
    DeviceIdentifierType,
    Order,
    PropertyValue,
    Sample
)
from .normalizer import (
    build_aggregate,
    flatten_aggregate_snapshot,
    flatten_datastream,
    flatten_properties,
    parse_sample
)
from .paginator import DatastreamPaginator, fetch_bounded


logger = logging.getLogger(__name__)


class RepositoryError(AppEngineError):
    """Raised when a request cannot be served for the given device or interface."""
    pass


class DeviceDataRepository:
    """
    Central repository for device data access.
    Every operation takes an optional schema; when it is omitted the schema is
    looked up from the device introspection through Realm Management.
    """

    def __init__(
        self,
        appengine: Optional[AppEngineClient] = None,
        realm_management: Optional[RealmManagementClient] = None,
        config: Optional[AppEngineConfig] = None
    ):
        """
        Initialize repository.

        Args:
            appengine: AppEngine client (if None, creates from config)
            realm_management: Realm Management client (if None, creates from config when configured)
            config: Configuration (if None, loads from file)
        """
        if config is None:
            config = load_config()

        self.config = config

        if appengine is None:
            appengine = AppEngineClient.from_config(config)
        if realm_management is None:
            realm_management = RealmManagementClient.from_config(config)

        self.appengine = appengine
        self.realm_management = realm_management

        # Cache for interface schemas, keyed by (device URL segment, interface)
        self._schema_cache: Dict[Tuple[str, str], InterfaceSchema] = {}

    @classmethod
    def from_config(cls, config_path: Optional[str | Path] = None) -> 'DeviceDataRepository':
        """
        Create repository from configuration file.

        Args:
            config_path: Path to configuration file

        Returns:
            Configured DeviceDataRepository instance
        """
        config = load_config(config_path)
        return cls(config=config)

    @property
    def realm(self) -> str:
        return self.config.api.realm

    def get_device(
        self,
        device: str,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> DeviceDetails:
        return self.appengine.get_device(self.realm, device, identifier_type)

    def get_interface_schema(
        self,
        device: str,
        interface_name: str,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> InterfaceSchema:
        """
        Get the schema of an interface in the major version the device declares.

        Raises:
            RepositoryError: If the device does not declare the interface or
                no Realm Management client is available
        """
        # An alias and a device ID spelled the same are different devices
        key = (resolve_device_path(device, identifier_type), interface_name)
        if key in self._schema_cache:
            return self._schema_cache[key]

        if self.realm_management is None:
            raise RepositoryError(
                f"No Realm Management client configured, the schema of {interface_name} must be given explicitly"
            )

        details = self.get_device(device, identifier_type)
        introspection = details.introspection.get(interface_name)
        if introspection is None:
            raise RepositoryError(f"Device {device} has no interface named {interface_name}")

        schema = self.realm_management.get_interface(self.realm, interface_name, introspection.major)
        self._schema_cache[key] = schema
        return schema

    def _resolve_schema(
        self,
        device: str,
        interface_name: str,
        schema: Optional[InterfaceSchema],
        identifier_type: DeviceIdentifierType,
        expected_type: Optional[InterfaceType] = None
    ) -> InterfaceSchema:
        if schema is None:
            schema = self.get_interface_schema(device, interface_name, identifier_type)

        if expected_type is not None and schema.type != expected_type:
            raise RepositoryError(
                f"{interface_name} is not a {expected_type.value} interface"
            )
        return schema

    @staticmethod
    def _typed_value(schema: InterfaceSchema, path: str, value: Any) -> Any:
        """Coerce a value read on path to the type of its mapping."""
        try:
            mapping = mapping_from_path(schema, path)
        except SchemaMismatchError:
            logger.debug("No mapping for %s on %s, decoding generically", path, schema.interface_name)
            return normalize_json_numbers(value)

        try:
            return coerce(value, mapping.type)
        except CoercionError as e:
            raise DecodeError(f"Invalid value at {path} on {schema.interface_name}: {e}")

    def _typed_aggregate(self, schema: InterfaceSchema, path: str, sample: AggregateSample) -> AggregateSample:
        base_path = "" if path in ("", "/") else path.rstrip("/")
        values = {}
        for key, value in sample.values.items():
            # Unset siblings of an object come back as null
            if value is None:
                values[key] = None
            else:
                values[key] = self._typed_value(schema, f"{base_path}/{key}", value)
        return sample.model_copy(update={'values': values})

    def _typed_sample(self, schema: InterfaceSchema, path: str, sample: Sample) -> Sample:
        return sample.model_copy(update={'value': self._typed_value(schema, path, sample.value)})

    def get_properties(
        self,
        device: str,
        interface_name: str,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> Dict[str, PropertyValue]:
        """
        Get all the currently set properties of an interface.

        Returns:
            Map of property path to PropertyValue
        """
        schema = self._resolve_schema(device, interface_name, schema, identifier_type, InterfaceType.PROPERTIES)
        device_path = resolve_device_path(device, identifier_type)

        data = self.appengine.get_interface_data(self.realm, device_path, interface_name)
        if not isinstance(data, MappingABC):
            raise DecodeError(f"Properties of {interface_name} are not a JSON object")

        return {
            path: PropertyValue(value=self._typed_value(schema, path, value))
            for path, value in flatten_properties(data).items()
        }

    def get_datastream_snapshot(
        self,
        device: str,
        interface_name: str,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> Dict[str, Sample]:
        """
        Get the last sample of every path of an individual datastream interface.

        Returns:
            Map of path to its latest Sample
        """
        schema = self._resolve_schema(device, interface_name, schema, identifier_type, InterfaceType.DATASTREAM)
        if schema.is_aggregate:
            raise RepositoryError(f"{interface_name} is object aggregated, use get_aggregate_snapshot")
        device_path = resolve_device_path(device, identifier_type)

        data = self.appengine.get_interface_data(self.realm, device_path, interface_name)
        if not isinstance(data, MappingABC):
            raise DecodeError(f"Snapshot of {interface_name} is not a JSON object")

        snapshot = flatten_datastream(data, endpoints=schema.endpoints)
        return {path: self._typed_sample(schema, path, sample) for path, sample in snapshot.items()}

    def get_aggregate_snapshot(
        self,
        device: str,
        interface_name: str,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> Dict[str, AggregateSample]:
        """
        Get the last value of an object aggregated interface.

        Returns:
            Map of object path (the resolved common prefix) to AggregateSample
        """
        schema = self._resolve_schema(device, interface_name, schema, identifier_type, InterfaceType.DATASTREAM)
        if not schema.is_aggregate:
            raise RepositoryError(f"{interface_name} is not object aggregated, use get_datastream_snapshot")
        device_path = resolve_device_path(device, identifier_type)

        # It's a snapshot, so limit=1
        data = self.appengine.get_interface_data(self.realm, device_path, interface_name, params={'limit': 1})
        snapshot = flatten_aggregate_snapshot(data)
        return {path: self._typed_aggregate(schema, path, sample) for path, sample in snapshot.items()}

    def datastream_paginator(
        self,
        device: str,
        interface_name: str,
        path: str = "",
        since: Optional[datetime] = None,
        to: Optional[datetime] = None,
        order: Order = Order.ASCENDING,
        page_size: Optional[int] = None,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> DatastreamPaginator:
        """
        Create a paginator over the samples of a datastream path.

        The path is validated against the schema before anything is fetched.

        Args:
            device: Device ID or alias
            interface_name: Datastream interface
            path: Path inside the interface; the object path for aggregates
            since: Start of the window, or None for the beginning of time
            to: End of the window, or None for now
            order: Ascending (oldest first) or descending
            page_size: Samples per page (defaults to the configured sample page size)
            schema: Interface schema, if already known

        Raises:
            SchemaMismatchError: If path cannot be queried on the interface
            RepositoryError: If the interface is not a datastream
        """
        schema = self._resolve_schema(device, interface_name, schema, identifier_type, InterfaceType.DATASTREAM)
        validate_query(schema, path)

        cursor = Cursor(
            window_start=since,
            window_end=to or datetime.now(timezone.utc),
            order=order,
            page_size=page_size or self.config.pagination.sample_page_size
        )
        device_path = resolve_device_path(device, identifier_type)
        url_path = AppEngineClient.interface_path(self.realm, device_path, interface_name, path)

        if schema.is_aggregate:
            def record_parser(record, record_path):
                return self._typed_aggregate(schema, record_path, build_aggregate(record, record_path))
        else:
            def record_parser(record, record_path):
                return self._typed_sample(schema, record_path, parse_sample(record, record_path))

        return DatastreamPaginator(self.appengine, url_path, cursor, record_parser=record_parser, data_path=path)

    def get_samples(
        self,
        device: str,
        interface_name: str,
        path: str = "",
        limit: int = 0,
        since: Optional[datetime] = None,
        to: Optional[datetime] = None,
        order: Order = Order.ASCENDING,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> List[Union[Sample, AggregateSample]]:
        """
        Retrieve up to limit samples of a datastream path.

        Args:
            limit: Maximum number of samples; <= 0 retrieves all of them

        Returns:
            Samples in the requested order
        """
        default_page_size = self.config.pagination.default_page_size
        page_size = limit if 0 < limit <= default_page_size else default_page_size

        paginator = self.datastream_paginator(
            device, interface_name, path,
            since=since, to=to, order=order, page_size=page_size,
            schema=schema, identifier_type=identifier_type
        )
        samples = fetch_bounded(paginator, limit)
        logger.info("Retrieved %d samples from %s%s on %s", len(samples), interface_name, path, device)
        return samples

    def get_last_samples(
        self,
        device: str,
        interface_name: str,
        path: str = "",
        limit: int = 1,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> List[Union[Sample, AggregateSample]]:
        """Retrieve the latest samples of a datastream path, newest first."""
        return self.get_samples(
            device, interface_name, path,
            limit=limit, order=Order.DESCENDING,
            schema=schema, identifier_type=identifier_type
        )

    def send_data(
        self,
        device: str,
        interface_name: str,
        path: str,
        payload: Any,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> Any:
        """
        Send a value to a server owned interface.

        The payload may be a command line string or an already typed value;
        it is coerced to the mapping type (per sibling for object aggregates).

        Returns:
            The typed value that was sent

        Raises:
            RepositoryError: If the interface is device owned
            SchemaMismatchError: If path does not resolve on the interface
            CoercionError: If the payload does not fit the mapping type
        """
        schema = self._resolve_schema(device, interface_name, schema, identifier_type)
        if schema.ownership != Ownership.SERVER:
            raise RepositoryError("Data can only be sent on server owned interfaces")

        if schema.is_aggregate:
            validate_query(schema, path)
            typed = coerce_object_payload(schema, path, payload)
        else:
            mapping = mapping_from_path(schema, path)
            typed = coerce(payload, mapping.type)

        device_path = resolve_device_path(device, identifier_type)
        wire_payload = to_json_value(typed)

        if schema.type == InterfaceType.PROPERTIES:
            self.appengine.set_property(self.realm, device_path, interface_name, path, wire_payload)
        else:
            self.appengine.send_datastream(self.realm, device_path, interface_name, path, wire_payload)

        logger.info("Sent data to %s%s on %s", interface_name, path, device)
        return typed

    def unset_property(
        self,
        device: str,
        interface_name: str,
        path: str,
        schema: Optional[InterfaceSchema] = None,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> None:
        """
        Unset a property on a server owned properties interface.

        Raises:
            RepositoryError: If the interface or mapping does not allow it
        """
        schema = self._resolve_schema(device, interface_name, schema, identifier_type, InterfaceType.PROPERTIES)
        if schema.ownership != Ownership.SERVER:
            raise RepositoryError("Properties can only be unset on server owned interfaces")

        mapping = mapping_from_path(schema, path)
        if not mapping.allow_unset:
            raise RepositoryError(f"Mapping {mapping.endpoint} does not allow unset")

        device_path = resolve_device_path(device, identifier_type)
        self.appengine.unset_property(self.realm, device_path, interface_name, path)

    @staticmethod
    def samples_to_dataframe(
        samples: Union[List[Union[Sample, AggregateSample]], Dict[str, Union[Sample, AggregateSample]]]
    ) -> pd.DataFrame:
        """
        Convert samples to a pandas DataFrame.

        Individual samples give timestamp, reception_timestamp and value
        columns. Aggregate samples give one column per sibling, in the order
        they were received. A path -> sample map adds a leading path column.

        Returns:
            DataFrame with one row per sample
        """
        if isinstance(samples, MappingABC):
            items = list(samples.items())
        else:
            items = [(None, s) for s in samples]

        if not items:
            return pd.DataFrame(columns=['timestamp', 'reception_timestamp', 'value'])

        rows = []
        for path, sample in items:
            row = {} if path is None else {'path': path}
            row['timestamp'] = sample.timestamp
            row['reception_timestamp'] = sample.reception_timestamp
            if isinstance(sample, AggregateSample):
                row.update(sample.values)
            else:
                row['value'] = sample.value
            rows.append(row)

        return pd.DataFrame(rows)

    def clear_cache(self) -> None:
        """Clear all cached interface schemas."""
        self._schema_cache = {}

    def close(self) -> None:
        self.appengine.close()
        if self.realm_management is not None:
            self.realm_management.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False
