"""
Close CRM Integration
======================

Connects to the Close API v1 for:
- Leads (with their contacts and opportunities)
- Activities per lead
- Opportunities per lead
- Users (sales reps)

Setup:
1. Close -> Settings -> Developer -> API Keys
2. Set CLOSE_API_KEY in .env

Close authenticates with HTTP Basic, the API key as username and an empty
password. Lists page with _skip/_limit and report has_more.
"""

from typing import Any, Dict, Iterator, List, Optional

from integrations.base import RestClient
from scripts.lib.logger import setup_logger

logger = setup_logger("close_client")

CLOSE_API_URL = "https://api.close.com/api/v1"
CLOSE_PAGE_LIMIT = 100


class CloseClient(RestClient):
    """Close CRM connector."""

    NAME = "Close"
    BASE_URL = CLOSE_API_URL
    ENV_KEY = "CLOSE_API_KEY"
    FEATURES = ["leads", "opportunities", "activities", "users"]
    HEALTH_ENDPOINT = "/me/"

    # Close allows roughly 16 req/s per key
    RATE_LIMIT = 80
    RATE_WINDOW = 5

    def _setup_auth(self):
        self.session.auth = (self.api_key, "")

    def _paginate(self, endpoint: str, params: Optional[dict] = None,
                  limit: int = CLOSE_PAGE_LIMIT, start: int = 0) -> Iterator[Dict]:
        params = dict(params or {})
        skip = start
        page = 0
        while True:
            page += 1
            params.update({"_skip": skip, "_limit": limit})
            data = self.get(endpoint, params)
            results = data.get("data", [])
            logger.debug("%s page %d: %d records", endpoint, page, len(results))
            yield from results
            skip += len(results)
            if not data.get("has_more") or not results:
                break

    def iter_leads(self, query: Optional[str] = None, start: int = 0) -> Iterator[Dict]:
        """
        Yield every lead, optionally filtered by a Close search query.

        resume_token holds the offset of the next unseen lead, so a loop that
        breaks off can continue on the same client. It resets once the last
        page has been read.
        """
        params = {"query": query} if query else None
        if self.resume_token and not start:
            start = int(self.resume_token)
        position = start
        for lead in self._paginate("/lead/", params, start=start):
            position += 1
            self.resume_token = str(position)
            yield lead
        self.resume_token = None

    def get_lead(self, lead_id: str) -> Dict:
        return self.get(f"/lead/{lead_id}/")

    def get_lead_activities(self, lead_id: str) -> List[Dict]:
        return list(self._paginate("/activity/", {"lead_id": lead_id}))

    def get_lead_opportunities(self, lead_id: str) -> List[Dict]:
        return list(self._paginate("/opportunity/", {"lead_id": lead_id}))

    def list_users(self) -> List[Dict]:
        users = list(self._paginate("/user/"))
        logger.info("Fetched %d Close users", len(users))
        return users

    def get_me(self) -> Dict[str, Any]:
        return self.get("/me/")
