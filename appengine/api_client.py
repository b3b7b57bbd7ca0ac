"""
HTTP clients for the AppEngine and Realm Management APIs.

Both APIs speak JSON wrapped in a {"data": ...} envelope and report failures
through an {"errors": {...}} envelope. Requests are never retried here.
"""

import base64
import binascii
import json
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from interfaces import InterfaceError, InterfaceSchema

from .config import AppEngineConfig
from .exceptions import AuthenticationError, DecodeError, TransportError
from .models import DeviceDetails, DeviceIdentifierType


logger = logging.getLogger(__name__)

_DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{22}$")


def is_valid_device_id(device_id: str) -> bool:
    """True if device_id is an unpadded URL-safe base64 encoding of 128 bits."""
    if not _DEVICE_ID_PATTERN.match(device_id):
        return False
    try:
        decoded = base64.urlsafe_b64decode(device_id + "==")
    except (binascii.Error, ValueError):
        return False
    return len(decoded) == 16


def resolve_device_path(
    device_identifier: str,
    identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
) -> str:
    """
    Build the device segment of an AppEngine URL.

    Autodiscovery treats anything that looks like a device ID as one and
    everything else as an alias.
    """
    if identifier_type == DeviceIdentifierType.AUTODISCOVER:
        if is_valid_device_id(device_identifier):
            identifier_type = DeviceIdentifierType.DEVICE_ID
        else:
            identifier_type = DeviceIdentifierType.ALIAS

    if identifier_type == DeviceIdentifierType.DEVICE_ID:
        return f"devices/{device_identifier}"
    return f"devices-by-alias/{quote(device_identifier, safe='')}"


class APIClient:
    """
    Bearer token authenticated JSON client.
    Handles headers, envelopes and error translation for a single API base URL.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = 30,
        user_agent: str = "appengine-data-client",
        session: Optional[requests.Session] = None
    ):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API
            token: Bearer token
            timeout: Request timeout in seconds
            user_agent: User-Agent header value
            session: Optional preconfigured requests session
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Accept': 'application/json',
            'User-Agent': user_agent,
        })

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        expected_status: int,
        params: Optional[Dict[str, Any]] = None,
        payload: Any = None,
        content_type: str = 'application/json'
    ) -> requests.Response:
        """
        Perform a request and check its status.

        Raises:
            TransportError: If the request fails or returns another status
        """
        url = self._url(path)
        headers = None
        data = None
        if payload is not None:
            headers = {'Content-Type': content_type}
            data = json.dumps({'data': payload})

        logger.debug("%s %s params=%s", method, url, params)

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                data=data,
                headers=headers,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}")

        if response.status_code != expected_status:
            raise self._error_from_response(method, url, response)

        return response

    @staticmethod
    def _error_from_response(method: str, url: str, response: requests.Response) -> TransportError:
        """Build an error from the {"errors": ...} envelope, if any."""
        try:
            body = response.json()
        except ValueError:
            body = None

        errors = body.get('errors', {}) if isinstance(body, dict) else {}
        if not isinstance(errors, dict):
            errors = {'detail': errors}
        detail = json.dumps(errors, indent=2) if errors else response.reason

        error_class = AuthenticationError if response.status_code in (401, 403) else TransportError
        return error_class(
            f"{method} {url} returned {response.status_code}: {detail}",
            status_code=response.status_code,
            errors=errors
        )

    @staticmethod
    def _decode_data(response: requests.Response) -> Any:
        """
        Decode the {"data": ...} envelope.

        Raises:
            DecodeError: If the body is not JSON or lacks the envelope
        """
        try:
            body = response.json()
        except ValueError as e:
            raise DecodeError(f"Response from {response.url} is not valid JSON: {e}")

        if not isinstance(body, dict) or 'data' not in body:
            raise DecodeError(f"Response from {response.url} has no data envelope")

        return body['data']

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None, expected_status: int = 200) -> Any:
        """GET path and return the content of its data envelope."""
        response = self._request('GET', path, expected_status, params=params)
        return self._decode_data(response)

    def write_json(
        self,
        verb: str,
        path: str,
        payload: Any,
        expected_status: int = 200,
        content_type: str = 'application/json'
    ) -> Any:
        """
        Send payload wrapped in a data envelope.

        Returns:
            The response data envelope content, or None for empty responses
        """
        response = self._request(verb, path, expected_status, payload=payload, content_type=content_type)
        if not response.content:
            return None
        return self._decode_data(response)

    def delete(self, path: str, expected_status: int = 204) -> None:
        self._request('DELETE', path, expected_status)

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False


class AppEngineClient(APIClient):
    """Client for device and data endpoints of AppEngine."""

    @classmethod
    def from_config(cls, config: AppEngineConfig) -> 'AppEngineClient':
        """
        Create API client from configuration.

        Args:
            config: AppEngineConfig object

        Returns:
            Configured AppEngineClient instance
        """
        return cls(
            base_url=config.api.appengine_url,
            token=config.api.token,
            timeout=config.api.timeout,
            user_agent=config.api.user_agent
        )

    @staticmethod
    def interface_path(realm: str, device_path: str, interface_name: str, interface_path: str = "") -> str:
        """Relative URL of an interface, or of a path inside it."""
        if interface_path in ("", "/"):
            interface_path = ""
        return f"v1/{realm}/{device_path}/interfaces/{interface_name}{interface_path}"

    def list_devices(self, realm: str) -> List[str]:
        """List the device IDs of a realm."""
        return self.get_json(f"v1/{realm}/devices")

    def get_device(
        self,
        realm: str,
        device_identifier: str,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> DeviceDetails:
        """
        Retrieve the details of a device.

        Raises:
            TransportError: If the request fails
            DecodeError: If the response cannot be decoded
        """
        data = self.get_json(f"v1/{realm}/{resolve_device_path(device_identifier, identifier_type)}")
        try:
            return DeviceDetails.model_validate(data)
        except ValueError as e:
            raise DecodeError(f"Invalid device details: {e}")

    def list_device_interfaces(
        self,
        realm: str,
        device_identifier: str,
        identifier_type: DeviceIdentifierType = DeviceIdentifierType.AUTODISCOVER
    ) -> List[str]:
        """List the interfaces a device has data on."""
        device_path = resolve_device_path(device_identifier, identifier_type)
        return self.get_json(f"v1/{realm}/{device_path}/interfaces")

    def list_device_aliases(self, realm: str, device_id: str) -> Dict[str, str]:
        return self.get_device(realm, device_id, DeviceIdentifierType.DEVICE_ID).aliases

    def add_device_alias(self, realm: str, device_id: str, alias_tag: str, alias: str) -> None:
        self.write_json(
            'PATCH',
            f"v1/{realm}/devices/{device_id}",
            {'aliases': {alias_tag: alias}},
            content_type='application/merge-patch+json'
        )

    def delete_device_alias(self, realm: str, device_id: str, alias_tag: str) -> None:
        # A null value removes the key in a merge patch
        self.write_json(
            'PATCH',
            f"v1/{realm}/devices/{device_id}",
            {'aliases': {alias_tag: None}},
            content_type='application/merge-patch+json'
        )

    def get_interface_data(
        self,
        realm: str,
        device_path: str,
        interface_name: str,
        interface_path: str = "",
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """GET the raw data of an interface, or of a path inside it."""
        return self.get_json(self.interface_path(realm, device_path, interface_name, interface_path), params=params)

    def send_datastream(self, realm: str, device_path: str, interface_name: str, interface_path: str, payload: Any) -> None:
        self.write_json('POST', self.interface_path(realm, device_path, interface_name, interface_path), payload)

    def set_property(self, realm: str, device_path: str, interface_name: str, interface_path: str, payload: Any) -> None:
        self.write_json('PUT', self.interface_path(realm, device_path, interface_name, interface_path), payload)

    def unset_property(self, realm: str, device_path: str, interface_name: str, interface_path: str) -> None:
        self.delete(self.interface_path(realm, device_path, interface_name, interface_path))


class RealmManagementClient(APIClient):
    """Client for the interface endpoints of Realm Management."""

    @classmethod
    def from_config(cls, config: AppEngineConfig) -> Optional['RealmManagementClient']:
        """
        Create the client from configuration.

        Returns:
            Configured client, or None if no Realm Management URL is configured
        """
        if not config.api.realm_management_url:
            return None
        return cls(
            base_url=config.api.realm_management_url,
            token=config.api.token,
            timeout=config.api.timeout,
            user_agent=config.api.user_agent
        )

    def list_interfaces(self, realm: str) -> List[str]:
        return self.get_json(f"v1/{realm}/interfaces")

    def list_interface_majors(self, realm: str, interface_name: str) -> List[int]:
        return self.get_json(f"v1/{realm}/interfaces/{interface_name}")

    def get_interface(self, realm: str, interface_name: str, major: int) -> InterfaceSchema:
        """
        Retrieve the schema of an interface.

        Raises:
            TransportError: If the request fails
            DecodeError: If the interface definition is invalid
        """
        data = self.get_json(f"v1/{realm}/interfaces/{interface_name}/{major}")
        try:
            return InterfaceSchema.from_dict(data)
        except InterfaceError as e:
            raise DecodeError(f"Invalid definition for {interface_name} v{major}: {e}")
