"""Google Calendar integration for apptsync."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from apptsync.config import OAuthClientConfig
from apptsync.errors import ProviderError
from apptsync.integrations.base import Capability, ProviderAdapter
from apptsync.models.integration import Provider
from apptsync.models.sync import EventSpec, ExternalEvent
from apptsync.timeutil import to_rfc3339

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Google Calendar API scopes
SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]

# Reminder overrides applied to every mirrored appointment.
REMINDERS = {
    "useDefault": False,
    "overrides": [
        {"method": "email", "minutes": 24 * 60},
        {"method": "popup", "minutes": 30},
    ],
}

_GONE_STATUSES = (404, 410)


def _http_status(error: HttpError) -> Optional[int]:
    try:
        return int(error.resp.status)
    except (AttributeError, TypeError, ValueError):
        return None


class GoogleCalendarAdapter(ProviderAdapter):
    """Mirrors appointments into the user's primary Google calendar."""

    provider = Provider.GOOGLE_CALENDAR
    integration_provider = Provider.GOOGLE_CALENDAR
    capabilities = frozenset(
        {Capability.AUTH_URL, Capability.TOKEN_EXCHANGE, Capability.EVENT_CRUD, Capability.EVENT_LIST}
    )
    token_url = GOOGLE_TOKEN_URL

    def __init__(self, client: OAuthClientConfig, *, timeout: float = 15.0, calendar_id: str = "primary"):
        super().__init__(client, timeout=timeout)
        self.calendar_id = calendar_id

    def auth_url(self, state: str) -> str:
        self.require(Capability.AUTH_URL)
        params = {
            "client_id": self.client.client_id,
            "redirect_uri": self.client.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _service(self, access_token: str):
        """Build a Calendar v3 service bound to one access token.

        The credentials carry no refresh token; refreshing is the credential
        store's job, never the client library's.
        """
        creds = Credentials(token=access_token)
        http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=self.timeout))
        return build("calendar", "v3", http=http, cache_discovery=False)

    def _event_body(self, spec: EventSpec) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "summary": spec.title,
            "description": spec.notes,
            "location": spec.location,
            "start": {"dateTime": to_rfc3339(spec.start), "timeZone": "UTC"},
            "end": {"dateTime": to_rfc3339(spec.end), "timeZone": "UTC"},
            "reminders": REMINDERS,
        }
        if spec.attendee_email:
            attendee = {"email": spec.attendee_email}
            if spec.attendee_name:
                attendee["displayName"] = spec.attendee_name
            body["attendees"] = [attendee]
        return body

    def _to_external(self, event: Dict[str, Any], action: str = "event") -> ExternalEvent:
        event_id = self._required_id(event, action)
        return ExternalEvent(
            id=event_id,
            title=event.get("summary"),
            notes=event.get("description"),
            location=event.get("location"),
            start=self._event_time((event.get("start") or {}).get("dateTime"), event_id),
            end=self._event_time((event.get("end") or {}).get("dateTime"), event_id),
            join_url=self._join_url(event),
        )

    def _join_url(self, event: Dict[str, Any]) -> Optional[str]:
        for entry_point in (event.get("conferenceData") or {}).get("entryPoints") or []:
            if entry_point.get("entryPointType") == "video" and entry_point.get("uri"):
                return entry_point["uri"]
        return event.get("hangoutLink")

    def _execute(self, request, action: str) -> Dict[str, Any]:
        try:
            result = request.execute(num_retries=0)
        except HttpError as error:
            raise ProviderError(
                f"Failed to {action} Google Calendar event: {error}",
                status_code=_http_status(error),
            ) from error
        except (httplib2.HttpLib2Error, OSError) as error:
            raise ProviderError(f"Failed to {action} Google Calendar event: {type(error).__name__}: {error}") from error
        except ValueError as error:
            # the client library raises this when a 2xx body is not JSON
            raise ProviderError(f"Google Calendar {action} returned a non-JSON body") from error
        if not isinstance(result, dict):
            raise ProviderError(f"Google Calendar {action} returned {type(result).__name__}, expected an object")
        return result

    def _insert_kwargs(self, spec: EventSpec) -> Dict[str, Any]:
        return {"calendarId": self.calendar_id, "body": self._event_body(spec), "sendUpdates": "none"}

    def create_event(self, access_token: str, spec: EventSpec) -> ExternalEvent:
        """Create a Google Calendar event.

        Raises:
            ProviderError: If the API call fails
        """
        self.require(Capability.EVENT_CRUD)
        service = self._service(access_token)
        event = self._execute(service.events().insert(**self._insert_kwargs(spec)), "create")
        return self._to_external(event, "create")

    def update_event(self, access_token: str, external_id: str, spec: EventSpec) -> ExternalEvent:
        # patch leaves fields we do not send (e.g. conference data) untouched
        self.require(Capability.EVENT_CRUD)
        service = self._service(access_token)
        event = self._execute(
            service.events().patch(
                calendarId=self.calendar_id,
                eventId=external_id,
                body=self._event_body(spec),
                sendUpdates="none",
            ),
            "update",
        )
        return self._to_external(event, "update")

    def delete_event(self, access_token: str, external_id: str) -> bool:
        """Delete an event. Never raises; an event already gone counts as deleted."""
        self.require(Capability.EVENT_CRUD)
        try:
            service = self._service(access_token)
            service.events().delete(calendarId=self.calendar_id, eventId=external_id).execute()
            return True
        except HttpError as error:
            if _http_status(error) in _GONE_STATUSES:
                return True
            logger.warning(f"Failed to delete {self.provider.value} event {external_id}: HttpError {_http_status(error)}")
            return False
        except Exception as e:
            logger.warning(f"Failed to delete {self.provider.value} event {external_id}: {type(e).__name__}: {str(e)}")
            return False

    def list_events(self, access_token: str, window_start: datetime, window_end: datetime) -> List[ExternalEvent]:
        """List single events in the window ordered by start, following pageToken."""
        self.require(Capability.EVENT_LIST)
        service = self._service(access_token)
        events: List[ExternalEvent] = []
        page_token = None
        while True:
            page = self._execute(
                service.events().list(
                    calendarId=self.calendar_id,
                    timeMin=to_rfc3339(window_start),
                    timeMax=to_rfc3339(window_end),
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=250,
                    pageToken=page_token,
                ),
                "list",
            )
            for item in page.get("items", []):
                if not isinstance(item, dict) or item.get("status") == "cancelled":
                    continue
                if not item.get("id"):
                    logger.warning(f"Skipping {self.provider.value} list item without an id")
                    continue
                events.append(self._to_external(item))
            page_token = page.get("nextPageToken")
            if not page_token:
                break
        return events
