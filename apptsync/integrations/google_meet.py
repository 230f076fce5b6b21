"""Google Meet conferencing, provisioned as a Calendar event with conference data."""

import uuid
from typing import Any, Dict

from apptsync.integrations.base import Capability
from apptsync.integrations.google_calendar import GoogleCalendarAdapter
from apptsync.models.integration import Provider
from apptsync.models.sync import EventSpec


class GoogleMeetAdapter(GoogleCalendarAdapter):
    """Creates a Calendar event that carries a Meet link.

    Uses the user's Google Calendar grant; there is no separate Meet connection,
    so the OAuth capabilities are not offered here.
    """

    provider = Provider.GOOGLE_MEET
    integration_provider = Provider.GOOGLE_CALENDAR
    capabilities = frozenset({Capability.EVENT_CRUD, Capability.CONFERENCING})

    def _insert_kwargs(self, spec: EventSpec) -> Dict[str, Any]:
        kwargs = super()._insert_kwargs(spec)
        if spec.create_conference:
            kwargs["body"]["conferenceData"] = {
                "createRequest": {
                    "requestId": spec.request_id or str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            kwargs["conferenceDataVersion"] = 1
        return kwargs
