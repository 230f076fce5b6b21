"""Microsoft (Outlook / Graph) calendar integration for apptsync."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from apptsync.config import OAuthClientConfig
from apptsync.errors import ProviderError
from apptsync.integrations.base import Capability, ProviderAdapter
from apptsync.models.integration import Provider
from apptsync.models.sync import EventSpec, ExternalEvent
from apptsync.timeutil import to_utc_naive

logger = logging.getLogger(__name__)

MICROSOFT_LOGIN_BASE = "https://login.microsoftonline.com"
GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"

SCOPES = ["offline_access", "Calendars.ReadWrite"]

# Ask Graph to express every dateTime in UTC, without an offset.
PREFER_UTC = 'outlook.timezone="UTC"'

_GONE_STATUSES = (404, 410)


def _graph_datetime(dt: datetime) -> Dict[str, str]:
    return {"dateTime": to_utc_naive(dt).replace(microsecond=0).isoformat(), "timeZone": "UTC"}


class MicrosoftCalendarAdapter(ProviderAdapter):
    """Mirrors appointments into the user's default Outlook calendar via Microsoft Graph."""

    provider = Provider.MICROSOFT_CALENDAR
    integration_provider = Provider.MICROSOFT_CALENDAR
    capabilities = frozenset(
        {Capability.AUTH_URL, Capability.TOKEN_EXCHANGE, Capability.EVENT_CRUD, Capability.EVENT_LIST}
    )

    def __init__(self, client: OAuthClientConfig, *, timeout: float = 15.0, tenant: str = "common"):
        super().__init__(client, timeout=timeout)
        self.tenant = tenant or "common"
        self.authorize_url = f"{MICROSOFT_LOGIN_BASE}/{self.tenant}/oauth2/v2.0/authorize"
        self.token_url = f"{MICROSOFT_LOGIN_BASE}/{self.tenant}/oauth2/v2.0/token"

    def auth_url(self, state: str) -> str:
        self.require(Capability.AUTH_URL)
        params = {
            "client_id": self.client.client_id,
            "response_type": "code",
            "redirect_uri": self.client.redirect_uri,
            "response_mode": "query",
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def _token_request_kwargs(self, form: Dict[str, str]) -> Dict[str, Any]:
        kwargs = super()._token_request_kwargs(form)
        kwargs["data"]["scope"] = " ".join(SCOPES)
        return kwargs

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Prefer": PREFER_UTC,
        }

    def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(access_token),
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Microsoft Graph {method} failed: {type(e).__name__}: {e}") from e
        if not response.ok:
            raise ProviderError(
                f"Microsoft Graph {method} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _event_body(self, spec: EventSpec) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "subject": spec.title,
            "body": {"contentType": "HTML", "content": spec.notes},
            "start": _graph_datetime(spec.start),
            "end": _graph_datetime(spec.end),
            "location": {"displayName": spec.location},
        }
        if spec.attendee_email:
            body["attendees"] = [
                {
                    "emailAddress": {"address": spec.attendee_email, "name": spec.attendee_name or spec.attendee_email},
                    "type": "required",
                }
            ]
        return body

    def _to_external(self, event: Dict[str, Any], action: str = "event") -> ExternalEvent:
        event_id = self._required_id(event, action)
        start = end = None
        if not event.get("isAllDay"):
            start = self._event_time((event.get("start") or {}).get("dateTime"), event_id)
            end = self._event_time((event.get("end") or {}).get("dateTime"), event_id)
        return ExternalEvent(
            id=event_id,
            title=event.get("subject"),
            notes=(event.get("body") or {}).get("content") or event.get("bodyPreview"),
            location=(event.get("location") or {}).get("displayName"),
            start=start,
            end=end,
            join_url=(event.get("onlineMeeting") or {}).get("joinUrl"),
        )

    def create_event(self, access_token: str, spec: EventSpec) -> ExternalEvent:
        self.require(Capability.EVENT_CRUD)
        response = self._request("POST", f"{GRAPH_API_BASE}/me/events", access_token, json=self._event_body(spec))
        return self._to_external(self._json_body(response, "create"), "create")

    def update_event(self, access_token: str, external_id: str, spec: EventSpec) -> ExternalEvent:
        self.require(Capability.EVENT_CRUD)
        response = self._request(
            "PATCH", f"{GRAPH_API_BASE}/me/events/{external_id}", access_token, json=self._event_body(spec)
        )
        return self._to_external(self._json_body(response, "update"), "update")

    def delete_event(self, access_token: str, external_id: str) -> bool:
        """Delete an event. Never raises; an event already gone counts as deleted."""
        self.require(Capability.EVENT_CRUD)
        try:
            self._request("DELETE", f"{GRAPH_API_BASE}/me/events/{external_id}", access_token)
            return True
        except ProviderError as e:
            if e.status_code in _GONE_STATUSES:
                return True
            logger.warning(f"Failed to delete {self.provider.value} event {external_id}: {str(e)}")
            return False

    def list_events(self, access_token: str, window_start: datetime, window_end: datetime) -> List[ExternalEvent]:
        """Expand the calendar view for the window, following @odata.nextLink."""
        self.require(Capability.EVENT_LIST)
        url: Optional[str] = f"{GRAPH_API_BASE}/me/calendar/calendarView"
        params: Optional[Dict[str, Any]] = {
            "startDateTime": to_utc_naive(window_start).replace(microsecond=0).isoformat() + "Z",
            "endDateTime": to_utc_naive(window_end).replace(microsecond=0).isoformat() + "Z",
            "$orderby": "start/dateTime",
            "$top": 100,
        }
        events: List[ExternalEvent] = []
        while url:
            page = self._json_body(self._request("GET", url, access_token, params=params), "list")
            for item in page.get("value") or []:
                if not isinstance(item, dict) or item.get("isCancelled"):
                    continue
                if not item.get("id"):
                    logger.warning(f"Skipping {self.provider.value} list item without an id")
                    continue
                events.append(self._to_external(item))
            # nextLink already embeds the query string
            url = page.get("@odata.nextLink")
            params = None
        return events
