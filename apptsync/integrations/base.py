"""Provider adapter contract shared by every calendar and conferencing integration."""

import logging
from abc import ABC
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

import requests

from apptsync.config import OAuthClientConfig
from apptsync.errors import AuthExchangeFailed, ProviderError, RefreshFailed, UnsupportedOperation
from apptsync.models.integration import Provider, TokenSet
from apptsync.models.sync import EventSpec, ExternalEvent
from apptsync.timeutil import parse_provider_datetime, utcnow

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """Operations an adapter may implement."""
    AUTH_URL = "auth_url"
    TOKEN_EXCHANGE = "token_exchange"
    EVENT_CRUD = "event_crud"
    EVENT_LIST = "event_list"
    CONFERENCING = "conferencing"


def _error_code(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("error") or body.get("reason")
    return None


class ProviderAdapter(ABC):
    """Uniform contract over one external provider.

    Subclasses declare `provider`, `integration_provider` (whose OAuth grant they
    use) and the `capabilities` they implement. Calling an operation outside the
    declared set raises UnsupportedOperation; the base implementations below do
    exactly that, so subclasses only override what they support.
    """

    provider: Provider
    integration_provider: Provider
    capabilities: FrozenSet[Capability] = frozenset()

    token_url: str = ""

    def __init__(self, client: OAuthClientConfig, *, timeout: float = 15.0):
        self.client = client
        self.timeout = timeout

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if not self.supports(capability):
            raise UnsupportedOperation(f"{self.provider.value} does not support {capability.value}")

    # OAuth

    def auth_url(self, state: str) -> str:
        self.require(Capability.AUTH_URL)
        raise NotImplementedError

    def exchange_code(self, code: str) -> TokenSet:
        self.require(Capability.TOKEN_EXCHANGE)
        data = self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.client.redirect_uri,
            }
        )
        return TokenSet.from_token_response(data, utcnow())

    def refresh(self, refresh_token: str) -> TokenSet:
        self.require(Capability.TOKEN_EXCHANGE)
        data = self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})
        return TokenSet.from_token_response(data, utcnow())

    def _token_request_kwargs(self, form: Dict[str, str]) -> Dict[str, Any]:
        """Request arguments for the token endpoint; client credentials go in the form."""
        form = dict(form)
        form["client_id"] = self.client.client_id
        form["client_secret"] = self.client.client_secret
        return {"data": form}

    def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        """POST to the token endpoint and return the JSON body.

        Raises AuthExchangeFailed for authorization codes and RefreshFailed for
        refresh grants; `invalid_grant` on refresh is permanent.
        """
        is_refresh = form.get("grant_type") == "refresh_token"
        try:
            response = requests.post(self.token_url, timeout=self.timeout, **self._token_request_kwargs(form))
        except requests.RequestException as e:
            message = f"{self.provider.value} token endpoint unreachable: {type(e).__name__}"
            if is_refresh:
                raise RefreshFailed(message) from e
            raise AuthExchangeFailed(message) from e

        if not response.ok:
            code = _error_code(response)
            message = f"{self.provider.value} token endpoint returned {response.status_code} ({code or 'no error code'})"
            if is_refresh:
                raise RefreshFailed(message, permanent=code == "invalid_grant")
            raise AuthExchangeFailed(message)

        try:
            data = response.json()
        except ValueError as e:
            raise (RefreshFailed if is_refresh else AuthExchangeFailed)(
                f"{self.provider.value} token endpoint returned a non-JSON body"
            ) from e
        if not data.get("access_token"):
            raise (RefreshFailed if is_refresh else AuthExchangeFailed)(
                f"{self.provider.value} token response carried no access_token"
            )
        return data

    # Events / meetings

    def create_event(self, access_token: str, spec: EventSpec) -> ExternalEvent:
        self.require(Capability.EVENT_CRUD)
        raise NotImplementedError

    def update_event(self, access_token: str, external_id: str, spec: EventSpec) -> ExternalEvent:
        self.require(Capability.EVENT_CRUD)
        raise NotImplementedError

    def delete_event(self, access_token: str, external_id: str) -> bool:
        self.require(Capability.EVENT_CRUD)
        raise NotImplementedError

    def list_events(self, access_token: str, window_start: datetime, window_end: datetime) -> List[ExternalEvent]:
        self.require(Capability.EVENT_LIST)
        raise NotImplementedError

    # Reply decoding

    def _json_body(self, response: requests.Response, action: str) -> Dict[str, Any]:
        """JSON object from a successful reply; anything else is a ProviderError."""
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.provider.value} {action} returned a non-JSON body",
                status_code=response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                f"{self.provider.value} {action} returned {type(data).__name__}, expected an object",
                status_code=response.status_code,
            )
        return data

    def _required_id(self, data: Dict[str, Any], action: str) -> str:
        event_id = data.get("id") if isinstance(data, dict) else None
        if event_id is None or event_id == "":
            raise ProviderError(f"{self.provider.value} {action} reply carried no id")
        return str(event_id)

    def _event_time(self, value: Optional[str], event_id: str) -> Optional[datetime]:
        """Parse a provider timestamp; an unreadable one is logged and treated as missing."""
        try:
            return parse_provider_datetime(value)
        except (TypeError, ValueError):
            logger.warning(f"Unreadable time {value!r} on {self.provider.value} event {event_id}")
            return None
