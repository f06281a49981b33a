"""
Calendly Integration
=====================

Connects to the Calendly API v2 for:
- Scheduled events across the organization
- Invitees per event

Setup:
1. Calendly -> Integrations -> API & Webhooks -> Personal Access Token
2. Set CALENDLY_API_KEY in .env

Collections page with pagination.next_page_token.
"""

from typing import Any, Dict, Iterator, List, Optional

from integrations.base import RestClient
from scripts.lib.logger import setup_logger

logger = setup_logger("calendly_client")

CALENDLY_API_URL = "https://api.calendly.com"
CALENDLY_PAGE_LIMIT = 100  # max allowed by the API


def uuid_from_uri(uri: str) -> str:
    """https://api.calendly.com/scheduled_events/ABC -> ABC"""
    return (uri or "").rstrip("/").rsplit("/", 1)[-1]


class CalendlyClient(RestClient):
    """Calendly scheduling connector."""

    NAME = "Calendly"
    BASE_URL = CALENDLY_API_URL
    ENV_KEY = "CALENDLY_API_KEY"
    FEATURES = ["scheduled_events", "invitees"]
    HEALTH_ENDPOINT = "/users/me"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._current_user: Optional[Dict] = None

    def get_current_user(self) -> Dict[str, Any]:
        if self._current_user is None:
            self._current_user = self.get("/users/me").get("resource", {})
        return self._current_user

    def _paginate(self, endpoint: str, params: dict, track_resume: bool = True) -> Iterator[Dict]:
        params = dict(params)
        page = 0
        while True:
            page += 1
            data = self.get(endpoint, params)
            collection = data.get("collection", [])
            logger.debug("%s page %d: %d records", endpoint, page, len(collection))
            yield from collection
            token = (data.get("pagination") or {}).get("next_page_token")
            if track_resume:
                self.resume_token = token
            if not token:
                break
            params["page_token"] = token

    def iter_events(self, min_start: Optional[str] = None, max_start: Optional[str] = None,
                    status: Optional[str] = "active",
                    count: int = CALENDLY_PAGE_LIMIT) -> Iterator[Dict]:
        """Yield the organization's scheduled events between two ISO timestamps."""
        organization = self.get_current_user().get("current_organization")
        params: Dict[str, Any] = {
            "organization": organization,
            "count": min(count, CALENDLY_PAGE_LIMIT),
            "sort": "start_time:desc",
        }
        if min_start:
            params["min_start_time"] = min_start
        if max_start:
            params["max_start_time"] = max_start
        if status:
            params["status"] = status
        yield from self._paginate("/scheduled_events", params)

    def get_event(self, event_uri: str) -> Dict:
        return self.get(f"/scheduled_events/{uuid_from_uri(event_uri)}").get("resource", {})

    def get_invitees(self, event_uri: str) -> List[Dict]:
        endpoint = f"/scheduled_events/{uuid_from_uri(event_uri)}/invitees"
        return list(self._paginate(endpoint, {"count": CALENDLY_PAGE_LIMIT}, track_resume=False))
