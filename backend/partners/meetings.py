from __future__ import annotations

import logging
from typing import Any

from crm.resources import normalize_meetings
from portal_core.config import calendly_base_url
from portal_core.errors import UpstreamError, upstream_error_details
from portal_core.http import response_json, send_request

logger = logging.getLogger(__name__)


def fetch_meetings(invitee_email: str) -> list[Any]:
    response = send_request(
        "GET",
        f"{calendly_base_url()}/calendly/groups/meetings",
        service="Meetings",
        headers={"Accept": "application/json"},
        params={"inviteeEmail": invitee_email},
    )
    if response.status_code >= 400:
        raise UpstreamError(
            "Failed to fetch appointments from Calendly",
            status_code=response.status_code,
            details=upstream_error_details(response),
        )
    meetings = normalize_meetings(response_json(response))
    logger.info("Fetched %s meetings", len(meetings))
    return meetings
