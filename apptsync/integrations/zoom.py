"""Zoom integration for apptsync.

Meetings are created per appointment through the Zoom REST API using the
user's own OAuth grant.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from apptsync.config import OAuthClientConfig
from apptsync.errors import ProviderError
from apptsync.integrations.base import Capability, ProviderAdapter
from apptsync.models.integration import Provider
from apptsync.models.sync import EventSpec, ExternalEvent
from apptsync.timeutil import floor_minutes, to_rfc3339

logger = logging.getLogger(__name__)

ZOOM_AUTH_URL = "https://zoom.us/oauth/authorize"
ZOOM_TOKEN_URL = "https://zoom.us/oauth/token"
ZOOM_API_BASE = "https://api.zoom.us/v2"

SCHEDULED_MEETING = 2

MEETING_SETTINGS = {
    "host_video": True,
    "participant_video": True,
    "join_before_host": False,
    "mute_upon_entry": True,
    "waiting_room": True,
    "audio": "both",
    "auto_recording": "none",
}

_GONE_STATUSES = (404, 410)


class ZoomAdapter(ProviderAdapter):
    """Creates and maintains one scheduled Zoom meeting per appointment."""

    provider = Provider.ZOOM
    integration_provider = Provider.ZOOM
    capabilities = frozenset(
        {Capability.AUTH_URL, Capability.TOKEN_EXCHANGE, Capability.EVENT_CRUD, Capability.CONFERENCING}
    )
    token_url = ZOOM_TOKEN_URL

    def __init__(self, client: OAuthClientConfig, *, timeout: float = 15.0, timezone_name: str = "UTC"):
        super().__init__(client, timeout=timeout)
        self.timezone_name = timezone_name

    def auth_url(self, state: str) -> str:
        self.require(Capability.AUTH_URL)
        params = {
            "response_type": "code",
            "client_id": self.client.client_id,
            "redirect_uri": self.client.redirect_uri,
            "state": state,
        }
        return f"{ZOOM_AUTH_URL}?{urlencode(params)}"

    def _token_request_kwargs(self, form: Dict[str, str]) -> Dict[str, Any]:
        # Zoom wants client credentials as HTTP Basic auth, not in the form.
        return {"data": dict(form), "auth": (self.client.client_id, self.client.client_secret)}

    def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        try:
            response = requests.request(
                method,
                f"{ZOOM_API_BASE}{path}",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
                json=json,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Zoom {method} {path} failed: {type(e).__name__}: {e}") from e
        if not response.ok:
            raise ProviderError(f"Zoom {method} {path} returned {response.status_code}", status_code=response.status_code)
        return response

    def _meeting_body(self, spec: EventSpec) -> Dict[str, Any]:
        return {
            "topic": spec.title[:200],
            "type": SCHEDULED_MEETING,
            "start_time": to_rfc3339(spec.start),
            "duration": floor_minutes(spec.start, spec.end),
            "timezone": self.timezone_name,
            "agenda": (spec.notes or "")[:2000],
            "settings": dict(MEETING_SETTINGS),
        }

    def create_event(self, access_token: str, spec: EventSpec) -> ExternalEvent:
        """Create a scheduled meeting.

        Raises:
            ProviderError: If the API call fails
        """
        self.require(Capability.EVENT_CRUD)
        response = self._request("POST", "/users/me/meetings", access_token, json=self._meeting_body(spec))
        data = self._json_body(response, "create")
        meeting_id = self._required_id(data, "create")
        start = self._event_time(data.get("start_time"), meeting_id)
        return ExternalEvent(
            id=meeting_id,
            title=data.get("topic"),
            notes=data.get("agenda"),
            start=start,
            end=spec.end if start else None,
            join_url=data.get("join_url"),
        )

    def update_event(self, access_token: str, external_id: str, spec: EventSpec) -> ExternalEvent:
        # PATCH answers 204 with no body; the join URL does not change.
        self.require(Capability.EVENT_CRUD)
        self._request("PATCH", f"/meetings/{external_id}", access_token, json=self._meeting_body(spec))
        return ExternalEvent(id=external_id, title=spec.title, notes=spec.notes, start=spec.start, end=spec.end)

    def delete_event(self, access_token: str, external_id: str) -> bool:
        """Delete a meeting. Never raises; a meeting already gone counts as deleted."""
        self.require(Capability.EVENT_CRUD)
        try:
            self._request("DELETE", f"/meetings/{external_id}", access_token)
            return True
        except ProviderError as e:
            if e.status_code in _GONE_STATUSES:
                return True
            logger.warning(f"Failed to delete Zoom meeting {external_id}: {str(e)}")
            return False
