"""
Integration tests for DeviceDataRepository.
Runs the whole stack (repository, clients, paginator, normalizer, coercion)
against a mocked HTTP session that behaves like AppEngine.
"""

import pytest
from unittest.mock import Mock
from datetime import datetime, timedelta, timezone
import json

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from interfaces import InterfaceSchema, SchemaMismatchError, CoercionError, format_rfc3339, parse_rfc3339
from appengine import (
    AppEngineConfig,
    AppEngineClient,
    RealmManagementClient,
    DeviceDataRepository,
    RepositoryError,
    DeviceIdentifierType,
    Order,
    Sample,
    AggregateSample,
    PropertyValue,
    DecodeError
)


APPENGINE_URL = "https://api.example.com/appengine"
REALM_MANAGEMENT_URL = "https://api.example.com/realmmanagement"
DEVICE_ID = "2TBn-jNESuuHamE2Zo1anA"
DEVICE_URL = f"{APPENGINE_URL}/v1/test/devices/{DEVICE_ID}"
T0 = datetime(2019, 1, 1, tzinfo=timezone.utc)

INTERFACES = {
    "org.example.Settings": {
        "interface_name": "org.example.Settings",
        "version_major": 1,
        "version_minor": 0,
        "type": "properties",
        "ownership": "server",
        "mappings": [
            {"endpoint": "/%{room}/enabled", "type": "boolean", "allow_unset": True},
            {"endpoint": "/%{room}/threshold", "type": "double"},
            {"endpoint": "/name", "type": "string"}
        ]
    },
    "org.example.Sensors": {
        "interface_name": "org.example.Sensors",
        "version_major": 2,
        "version_minor": 1,
        "type": "datastream",
        "ownership": "device",
        "mappings": [
            {"endpoint": "/%{sensor_id}/value", "type": "double"},
            {"endpoint": "/%{sensor_id}/count", "type": "integer"}
        ]
    },
    "org.example.Weather": {
        "interface_name": "org.example.Weather",
        "version_major": 0,
        "version_minor": 3,
        "type": "datastream",
        "ownership": "device",
        "aggregation": "object",
        "mappings": [
            {"endpoint": "/%{station}/temperature", "type": "double"},
            {"endpoint": "/%{station}/humidity", "type": "double"},
            {"endpoint": "/%{station}/captured", "type": "datetime"}
        ]
    },
    "org.example.Commands": {
        "interface_name": "org.example.Commands",
        "version_major": 1,
        "version_minor": 0,
        "type": "datastream",
        "ownership": "server",
        "mappings": [
            {"endpoint": "/led/brightness", "type": "integer"},
            {"endpoint": "/led/pattern", "type": "binaryblob"}
        ]
    }
}


def make_response(status_code=200, body=None):
    """Build a mocked requests.Response."""
    response = Mock()
    response.status_code = status_code
    response.reason = "OK" if status_code < 400 else "Error"
    response.url = APPENGINE_URL
    if body is None:
        response.content = b""
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.content = json.dumps(body).encode()
        response.json.return_value = body
    return response


def make_series(count, start=T0):
    return [
        {
            "value": float(i),
            "timestamp": format_rfc3339(start + timedelta(minutes=i)),
            "reception_timestamp": format_rfc3339(start + timedelta(minutes=i, seconds=1))
        }
        for i in range(count)
    ]


class FakeAppEngine:
    """Routes mocked session requests to canned AppEngine responses."""

    def __init__(self):
        self.routes = {}
        self.series = {}
        self.calls = []

    def add(self, method, url, body=None, status_code=200):
        self.routes[(method, url)] = (status_code, body)

    def add_series(self, url, records):
        self.series[url] = records

    def data_calls(self, url):
        return [call for call in self.calls if call[0] == "GET" and call[1] == url]

    @staticmethod
    def _timestamp(record):
        return parse_rfc3339(record["timestamp"])

    def _window(self, records, params):
        to = parse_rfc3339(params["to"])

        if "page_size" in params:
            selected = [r for r in records if self._timestamp(r) <= to]
            if "since_after" in params:
                bound = parse_rfc3339(params["since_after"])
                selected = [r for r in selected if self._timestamp(r) > bound]
            elif "since" in params:
                bound = parse_rfc3339(params["since"])
                selected = [r for r in selected if self._timestamp(r) >= bound]
            return selected[:params["page_size"]]

        selected = [r for r in reversed(records) if self._timestamp(r) <= to]
        if "since" in params:
            bound = parse_rfc3339(params["since"])
            selected = [r for r in selected if self._timestamp(r) >= bound]
        return selected[:params["limit"]]

    def request(self, method, url, params=None, data=None, headers=None, timeout=None):
        self.calls.append((method, url, params, json.loads(data) if data else None))

        if method == "GET" and url in self.series:
            return make_response(200, {"data": self._window(self.series[url], params)})

        if (method, url) in self.routes:
            status_code, body = self.routes[(method, url)]
            return make_response(status_code, body)

        return make_response(404, {"errors": {"detail": "Not found"}})


@pytest.fixture
def backend():
    """Fake AppEngine with one device and its interfaces."""
    backend = FakeAppEngine()

    backend.add("GET", DEVICE_URL, {"data": {
        "id": DEVICE_ID,
        "connected": True,
        "introspection": {
            name: {"major": interface["version_major"], "minor": interface["version_minor"]}
            for name, interface in INTERFACES.items()
        },
        "aliases": {"name": "kitchen"}
    }})

    for name, interface in INTERFACES.items():
        backend.add(
            "GET",
            f"{REALM_MANAGEMENT_URL}/v1/test/interfaces/{name}/{interface['version_major']}",
            {"data": interface}
        )

    return backend


@pytest.fixture
def config():
    return AppEngineConfig.from_dict({
        "api": {
            "appengine_url": APPENGINE_URL,
            "realm_management_url": REALM_MANAGEMENT_URL,
            "realm": "test",
            "token": "secret-token"
        },
        "pagination": {"default_page_size": 4, "sample_page_size": 3}
    })


@pytest.fixture
def repository(backend, config):
    """Repository whose clients share the mocked session."""
    session = Mock()
    session.headers = {}
    session.request.side_effect = backend.request

    appengine = AppEngineClient(APPENGINE_URL, config.api.token, session=session)
    realm_management = RealmManagementClient(REALM_MANAGEMENT_URL, config.api.token, session=session)

    return DeviceDataRepository(appengine=appengine, realm_management=realm_management, config=config)


class TestInterfaceSchemas:
    """Test schema resolution through the device introspection."""

    def test_schema_from_introspection(self, repository, backend):
        """Test the schema major comes from the device introspection."""
        schema = repository.get_interface_schema(DEVICE_ID, "org.example.Sensors")

        assert schema.version_major == 2
        assert schema.is_parametric
        assert (
            "GET", f"{REALM_MANAGEMENT_URL}/v1/test/interfaces/org.example.Sensors/2", None, None
        ) in backend.calls

    def test_schema_cache(self, repository, backend):
        """Test schemas are fetched once per device and interface."""
        repository.get_interface_schema(DEVICE_ID, "org.example.Sensors")
        calls = len(backend.calls)

        repository.get_interface_schema(DEVICE_ID, "org.example.Sensors")
        assert len(backend.calls) == calls

        repository.clear_cache()
        repository.get_interface_schema(DEVICE_ID, "org.example.Sensors")
        assert len(backend.calls) > calls

    def test_schema_cache_per_identifier_type(self, repository, backend):
        """Test an alias spelled like a cached device ID is resolved on its own."""
        alias_url = f"{APPENGINE_URL}/v1/test/devices-by-alias/{DEVICE_ID}"
        backend.add("GET", alias_url, {"data": {
            "id": "olFkumNuZ_J0f_d6-8XCDg",
            "introspection": {"org.example.Sensors": {"major": 1, "minor": 0}}
        }})
        backend.add(
            "GET",
            f"{REALM_MANAGEMENT_URL}/v1/test/interfaces/org.example.Sensors/1",
            {"data": dict(INTERFACES["org.example.Sensors"], version_major=1)}
        )

        by_id = repository.get_interface_schema(DEVICE_ID, "org.example.Sensors")
        by_alias = repository.get_interface_schema(DEVICE_ID, "org.example.Sensors", DeviceIdentifierType.ALIAS)

        assert by_id.version_major == 2
        assert by_alias.version_major == 1
        assert ("GET", alias_url, None, None) in backend.calls

        calls = len(backend.calls)
        explicit = repository.get_interface_schema(DEVICE_ID, "org.example.Sensors", DeviceIdentifierType.DEVICE_ID)
        assert explicit.version_major == 2
        assert len(backend.calls) == calls

    def test_unknown_interface(self, repository):
        """Test interfaces missing from the introspection."""
        with pytest.raises(RepositoryError, match="no interface named"):
            repository.get_interface_schema(DEVICE_ID, "org.example.Missing")

    def test_without_realm_management(self, backend, config):
        """Test an explicit schema is required without Realm Management."""
        session = Mock()
        session.headers = {}
        session.request.side_effect = backend.request
        config.api.realm_management_url = None
        repository = DeviceDataRepository(
            appengine=AppEngineClient(APPENGINE_URL, "token", session=session),
            config=config
        )

        assert repository.realm_management is None
        with pytest.raises(RepositoryError, match="must be given explicitly"):
            repository.get_interface_schema(DEVICE_ID, "org.example.Sensors")


class TestProperties:
    """Test property retrieval and updates."""

    def test_get_properties(self, repository, backend):
        """Test properties are flattened and typed per mapping."""
        backend.add("GET", f"{DEVICE_URL}/interfaces/org.example.Settings", {"data": {
            "kitchen": {"enabled": True, "threshold": 21},
            "name": "home"
        }})

        properties = repository.get_properties(DEVICE_ID, "org.example.Settings")

        assert properties == {
            "/kitchen/enabled": PropertyValue(value=True),
            "/kitchen/threshold": PropertyValue(value=21.0),
            "/name": PropertyValue(value="home")
        }
        assert isinstance(properties["/kitchen/threshold"].value, float)

    def test_get_properties_wrong_type(self, repository):
        """Test asking properties of a datastream interface."""
        with pytest.raises(RepositoryError, match="not a properties interface"):
            repository.get_properties(DEVICE_ID, "org.example.Sensors")

    def test_get_properties_by_alias(self, repository, backend):
        """Test devices can be addressed by alias."""
        backend.add(
            "GET",
            f"{APPENGINE_URL}/v1/test/devices-by-alias/kitchen/interfaces/org.example.Settings",
            {"data": {"name": "home"}}
        )
        schema = InterfaceSchema.from_dict(INTERFACES["org.example.Settings"])

        properties = repository.get_properties("kitchen", "org.example.Settings", schema=schema)

        assert properties["/name"].value == "home"

    def test_set_property(self, repository, backend):
        """Test properties are PUT with their typed value."""
        url = f"{DEVICE_URL}/interfaces/org.example.Settings/kitchen/threshold"
        backend.add("PUT", url, {"data": 22.5})

        sent = repository.send_data(DEVICE_ID, "org.example.Settings", "/kitchen/threshold", "22.5")

        assert sent == 22.5
        assert backend.calls[-1] == ("PUT", url, None, {"data": 22.5})

    def test_unset_property(self, repository, backend):
        """Test unsetting a property that allows it."""
        url = f"{DEVICE_URL}/interfaces/org.example.Settings/kitchen/enabled"
        backend.add("DELETE", url, None, status_code=204)

        repository.unset_property(DEVICE_ID, "org.example.Settings", "/kitchen/enabled")

        assert backend.calls[-1][:2] == ("DELETE", url)

    def test_unset_not_allowed(self, repository):
        """Test mappings without allow_unset."""
        with pytest.raises(RepositoryError, match="does not allow unset"):
            repository.unset_property(DEVICE_ID, "org.example.Settings", "/name")


class TestSnapshots:
    """Test last value snapshots."""

    def test_datastream_snapshot(self, repository, backend):
        """Test individual snapshots are found through the endpoints."""
        backend.add("GET", f"{DEVICE_URL}/interfaces/org.example.Sensors", {"data": {
            "s1": {
                "value": {"value": 15, "timestamp": "2019-01-01T01:23:45.678Z"},
                "count": {"value": 3, "timestamp": "2019-01-01T01:23:45.678Z"}
            }
        }})

        snapshot = repository.get_datastream_snapshot(DEVICE_ID, "org.example.Sensors")

        assert set(snapshot.keys()) == {"/s1/value", "/s1/count"}
        assert isinstance(snapshot["/s1/value"], Sample)
        assert snapshot["/s1/value"].value == 15.0
        assert isinstance(snapshot["/s1/value"].value, float)
        assert snapshot["/s1/count"].value == 3
        assert snapshot["/s1/value"].timestamp == datetime(2019, 1, 1, 1, 23, 45, 678000, tzinfo=timezone.utc)

    def test_aggregate_snapshot(self, repository, backend):
        """Test object snapshots are typed per sibling."""
        url = f"{DEVICE_URL}/interfaces/org.example.Weather"
        backend.add("GET", url, {"data": {
            "station1": [{
                "temperature": 20,
                "humidity": 40.5,
                "captured": "2019-01-01T00:00:00Z",
                "timestamp": "2019-01-01T00:00:05Z"
            }]
        }})

        snapshot = repository.get_aggregate_snapshot(DEVICE_ID, "org.example.Weather")

        aggregate = snapshot["/station1"]
        assert isinstance(aggregate, AggregateSample)
        assert list(aggregate.values.keys()) == ["temperature", "humidity", "captured"]
        assert aggregate.values["temperature"] == 20.0
        assert aggregate.values["captured"] == T0
        assert backend.data_calls(url)[0][2] == {"limit": 1}

    def test_snapshot_kind_mismatch(self, repository):
        """Test each snapshot kind checks the aggregation."""
        with pytest.raises(RepositoryError, match="object aggregated"):
            repository.get_datastream_snapshot(DEVICE_ID, "org.example.Weather")
        with pytest.raises(RepositoryError, match="not object aggregated"):
            repository.get_aggregate_snapshot(DEVICE_ID, "org.example.Sensors")

    def test_snapshot_invalid_value(self, repository, backend):
        """Test values that do not fit their mapping."""
        backend.add("GET", f"{DEVICE_URL}/interfaces/org.example.Sensors", {"data": {
            "s1": {"count": {"value": "many", "timestamp": "2019-01-01T00:00:00Z"}}
        }})

        with pytest.raises(DecodeError, match="/s1/count"):
            repository.get_datastream_snapshot(DEVICE_ID, "org.example.Sensors")


class TestSamples:
    """Test paginated sample retrieval."""

    @pytest.fixture
    def series_url(self, backend):
        url = f"{DEVICE_URL}/interfaces/org.example.Sensors/s1/value"
        backend.add_series(url, make_series(10))
        return url

    def test_all_samples(self, repository, backend, series_url):
        """Test limit 0 retrieves everything with the default page size."""
        samples = repository.get_samples(DEVICE_ID, "org.example.Sensors", "/s1/value")

        assert [s.value for s in samples] == [float(i) for i in range(10)]
        calls = backend.data_calls(series_url)
        assert len(calls) == 3
        assert all(call[2]["page_size"] == 4 for call in calls)

    def test_limited_samples(self, repository, backend, series_url):
        """Test a small limit is used as the page size."""
        samples = repository.get_samples(DEVICE_ID, "org.example.Sensors", "/s1/value", limit=2)

        assert [s.value for s in samples] == [0.0, 1.0]
        calls = backend.data_calls(series_url)
        assert len(calls) == 1
        assert calls[0][2]["page_size"] == 2

    def test_limit_above_page_size(self, repository, backend, series_url):
        """Test a limit larger than the page size spans several pages."""
        samples = repository.get_samples(DEVICE_ID, "org.example.Sensors", "/s1/value", limit=6)

        assert [s.value for s in samples] == [float(i) for i in range(6)]
        assert len(backend.data_calls(series_url)) == 2

    def test_samples_in_window(self, repository, series_url):
        """Test since and to bound the retrieved samples."""
        samples = repository.get_samples(
            DEVICE_ID, "org.example.Sensors", "/s1/value",
            since=T0 + timedelta(minutes=2), to=T0 + timedelta(minutes=6)
        )

        assert [s.value for s in samples] == [2.0, 3.0, 4.0, 5.0, 6.0]

    def test_last_samples(self, repository, backend, series_url):
        """Test the latest samples come newest first."""
        samples = repository.get_last_samples(DEVICE_ID, "org.example.Sensors", "/s1/value", limit=3)

        assert [s.value for s in samples] == [9.0, 8.0, 7.0]
        calls = backend.data_calls(series_url)
        assert calls[0][2]["limit"] == 3
        assert "page_size" not in calls[0][2]

    def test_descending_all_samples(self, repository, series_url):
        """Test descending retrieval returns every sample once."""
        samples = repository.get_samples(
            DEVICE_ID, "org.example.Sensors", "/s1/value", order=Order.DESCENDING
        )

        assert [s.value for s in samples] == [float(i) for i in range(9, -1, -1)]

    def test_invalid_path_fetches_nothing(self, repository, backend, series_url):
        """Test paths are validated before any data request."""
        with pytest.raises(SchemaMismatchError):
            repository.get_samples(DEVICE_ID, "org.example.Sensors", "/s1")

        assert not any(call[1].startswith(f"{DEVICE_URL}/interfaces/") for call in backend.calls)

    def test_properties_cannot_paginate(self, repository):
        """Test pagination is only for datastreams."""
        with pytest.raises(RepositoryError):
            repository.datastream_paginator(DEVICE_ID, "org.example.Settings", "/name")

    def test_paginator_defaults(self, repository):
        """Test paginator configuration defaults."""
        paginator = repository.datastream_paginator(DEVICE_ID, "org.example.Sensors", "/s1/value")

        assert paginator.page_size == 3
        assert paginator.order == Order.ASCENDING
        assert paginator.cursor.window_end.utcoffset() == timedelta(0)

    def test_aggregate_samples(self, repository, backend):
        """Test paginating an object aggregated path."""
        url = f"{DEVICE_URL}/interfaces/org.example.Weather/station1"
        backend.add_series(url, [
            {"temperature": 20 + i, "humidity": 40.5, "timestamp": format_rfc3339(T0 + timedelta(minutes=i))}
            for i in range(5)
        ])

        samples = repository.get_samples(DEVICE_ID, "org.example.Weather", "/station1")

        assert len(samples) == 5
        assert all(isinstance(s, AggregateSample) for s in samples)
        assert samples[2].values == {"temperature": 22.0, "humidity": 40.5}

    def test_aggregate_path_required(self, repository):
        """Test object aggregated interfaces need their object path."""
        with pytest.raises(SchemaMismatchError, match="should be specified"):
            repository.get_samples(DEVICE_ID, "org.example.Weather")

    def test_samples_to_dataframe(self, repository, series_url):
        """Test conversion to a DataFrame."""
        samples = repository.get_samples(DEVICE_ID, "org.example.Sensors", "/s1/value", limit=3)

        df = DeviceDataRepository.samples_to_dataframe(samples)

        assert list(df.columns) == ["timestamp", "reception_timestamp", "value"]
        assert len(df) == 3
        assert df["value"].tolist() == [0.0, 1.0, 2.0]

    def test_aggregate_dataframe(self):
        """Test aggregate columns keep the received order."""
        samples = [
            AggregateSample(values={"temperature": 20.0, "humidity": 40.0}, timestamp=T0),
            AggregateSample(values={"temperature": 21.0, "humidity": 41.0}, timestamp=T0 + timedelta(minutes=1))
        ]

        df = DeviceDataRepository.samples_to_dataframe(samples)

        assert list(df.columns) == ["timestamp", "reception_timestamp", "temperature", "humidity"]

    def test_snapshot_dataframe(self):
        """Test path keyed snapshots get a path column."""
        df = DeviceDataRepository.samples_to_dataframe({"/s1/value": Sample(value=1.0, timestamp=T0)})

        assert list(df.columns) == ["path", "timestamp", "reception_timestamp", "value"]
        assert DeviceDataRepository.samples_to_dataframe([]).empty


class TestSendData:
    """Test sending data to server owned interfaces."""

    def test_send_individual(self, repository, backend):
        """Test command line values are coerced before sending."""
        url = f"{DEVICE_URL}/interfaces/org.example.Commands/led/brightness"
        backend.add("POST", url, None)

        sent = repository.send_data(DEVICE_ID, "org.example.Commands", "/led/brightness", "42")

        assert sent == 42
        assert backend.calls[-1] == ("POST", url, None, {"data": 42})

    def test_send_blob(self, repository, backend):
        """Test blobs go on the wire base64 encoded."""
        url = f"{DEVICE_URL}/interfaces/org.example.Commands/led/pattern"
        backend.add("POST", url, None)

        sent = repository.send_data(DEVICE_ID, "org.example.Commands", "/led/pattern", "aGVsbG8=")

        assert sent == b"hello"
        assert backend.calls[-1][3] == {"data": "aGVsbG8="}

    def test_send_invalid_value(self, repository, backend):
        """Test values that do not fit the mapping are not sent."""
        calls = len(backend.calls)

        with pytest.raises(CoercionError):
            repository.send_data(DEVICE_ID, "org.example.Commands", "/led/brightness", "bright")

        assert not any(call[0] == "POST" for call in backend.calls[calls:])

    def test_send_unknown_path(self, repository):
        """Test paths outside the interface."""
        with pytest.raises(SchemaMismatchError):
            repository.send_data(DEVICE_ID, "org.example.Commands", "/led/color", "red")

    def test_send_device_owned(self, repository):
        """Test device owned interfaces refuse data."""
        with pytest.raises(RepositoryError, match="server owned"):
            repository.send_data(DEVICE_ID, "org.example.Sensors", "/s1/value", "1.5")

    def test_send_aggregate(self, repository, backend):
        """Test object payloads are coerced per sibling."""
        schema = InterfaceSchema.from_dict({**INTERFACES["org.example.Weather"], "ownership": "server"})
        url = f"{DEVICE_URL}/interfaces/org.example.Weather/station1"
        backend.add("POST", url, None)

        sent = repository.send_data(
            DEVICE_ID, "org.example.Weather", "/station1",
            '{"temperature": 21, "captured": "2019-01-01T00:00:00Z"}',
            schema=schema
        )

        assert sent == {"temperature": 21.0, "captured": T0}
        assert backend.calls[-1][3] == {"data": {"temperature": 21.0, "captured": "2019-01-01T00:00:00Z"}}


class TestRepositoryLifecycle:
    """Test repository construction and cleanup."""

    def test_context_manager(self, repository):
        """Test clients are closed on exit."""
        with repository as repo:
            assert repo.realm == "test"

        repository.appengine.session.close.assert_called()

    def test_from_config(self, config, tmp_path):
        """Test building the repository from a YAML file."""
        config_path = tmp_path / "appengine_config.yaml"
        config.save_yaml(config_path)

        repository = DeviceDataRepository.from_config(config_path)

        assert repository.config.api.appengine_url == APPENGINE_URL
        assert isinstance(repository.realm_management, RealmManagementClient)
        repository.close()
