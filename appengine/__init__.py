"""
AppEngine module for device data access.

This module retrieves properties and datastreams of devices through the
AppEngine API and turns the JSON trees it returns into typed, path addressed
values.

Architecture:
- API Client: Handles AppEngine and Realm Management communication
- Repository: Provides high-level, schema aware data access
- Paginator: Walks datastream time windows page by page
- Normalizer: Flattens interface data trees into samples and properties
- Models: Pydantic models for type safety and validation
- Config: YAML-based configuration management
"""

from .models import (
    Order,
    DeviceIdentifierType,
    Sample,
    AggregateSample,
    PropertyValue,
    Cursor,
    DeviceDetails,
    DeviceInterfaceIntrospection
)

from .api_client import (
    APIClient,
    AppEngineClient,
    RealmManagementClient,
    is_valid_device_id,
    resolve_device_path
)

from .exceptions import (
    AppEngineError,
    TransportError,
    AuthenticationError,
    DecodeError,
    MalformedRecordError,
    MalformedTimestampError,
    NoMorePagesError,
    SchemaMismatchError
)

from .normalizer import (
    flatten_properties,
    flatten_datastream,
    flatten_aggregate_snapshot,
    parse_sample,
    build_aggregate
)

from .paginator import (
    DatastreamPaginator,
    fetch_bounded
)

from .repository import (
    DeviceDataRepository,
    RepositoryError
)

from .config import (
    AppEngineConfig,
    APISettings,
    PaginationSettings,
    LoggingSettings,
    load_config
)

from .logging_config import setup_logging

__all__ = [
    # Main repository
    'DeviceDataRepository',

    # API Clients
    'APIClient',
    'AppEngineClient',
    'RealmManagementClient',
    'is_valid_device_id',
    'resolve_device_path',

    # Pagination
    'DatastreamPaginator',
    'fetch_bounded',

    # Normalization
    'flatten_properties',
    'flatten_datastream',
    'flatten_aggregate_snapshot',
    'parse_sample',
    'build_aggregate',

    # Models
    'Order',
    'DeviceIdentifierType',
    'Sample',
    'AggregateSample',
    'PropertyValue',
    'Cursor',
    'DeviceDetails',
    'DeviceInterfaceIntrospection',

    # Configuration
    'AppEngineConfig',
    'APISettings',
    'PaginationSettings',
    'LoggingSettings',
    'load_config',
    'setup_logging',

    # Errors
    'AppEngineError',
    'TransportError',
    'AuthenticationError',
    'DecodeError',
    'MalformedRecordError',
    'MalformedTimestampError',
    'NoMorePagesError',
    'SchemaMismatchError',
    'RepositoryError',
]

__version__ = '0.1.0'
__description__ = 'Paginated, schema aware device data access for AppEngine'
