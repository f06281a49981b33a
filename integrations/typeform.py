"""
Typeform Integration
=====================

Connects to the Typeform API for:
- Form definitions (field ids and titles)
- Form responses

Setup:
1. Typeform -> Account -> Personal tokens
2. Set TYPEFORM_API_KEY in .env

Responses come newest first; the next page is requested with
before=<token of the last response seen>.
"""

from typing import Any, Dict, Iterator, List, Optional

from integrations.base import RestClient
from scripts.lib.logger import setup_logger

logger = setup_logger("typeform_client")

TYPEFORM_API_URL = "https://api.typeform.com"
TYPEFORM_PAGE_LIMIT = 100


class TypeformClient(RestClient):
    """Typeform connector."""

    NAME = "Typeform"
    BASE_URL = TYPEFORM_API_URL
    ENV_KEY = "TYPEFORM_API_KEY"
    FEATURES = ["forms", "responses"]
    HEALTH_ENDPOINT = "/me"

    # Typeform's Create/Responses APIs allow 2 req/s
    RATE_LIMIT = 2
    RATE_WINDOW = 1

    def list_forms(self) -> List[Dict]:
        forms: List[Dict] = []
        page = 1
        while True:
            data = self.get("/forms", {"page": page, "page_size": 200})
            forms.extend(data.get("items", []))
            if page >= (data.get("page_count") or 1):
                break
            page += 1
        logger.info("Fetched %d Typeform forms", len(forms))
        return forms

    def get_form(self, form_id: str) -> Dict[str, Any]:
        return self.get(f"/forms/{form_id}")

    def iter_responses(self, form_id: str, since: Optional[str] = None,
                       page_size: int = TYPEFORM_PAGE_LIMIT) -> Iterator[Dict]:
        """Yield completed responses for a form, newest first."""
        params: Dict[str, Any] = {"page_size": min(page_size, 1000), "completed": "true"}
        if since:
            params["since"] = since
        page = 0
        while True:
            page += 1
            data = self.get(f"/forms/{form_id}/responses", params)
            items = data.get("items", [])
            logger.debug("Form %s page %d: %d responses", form_id, page, len(items))
            yield from items
            if len(items) < params["page_size"]:
                self.resume_token = None
                break
            self.resume_token = items[-1].get("token")
            if not self.resume_token:
                break
            params["before"] = self.resume_token
