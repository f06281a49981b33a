"""
Notion Integration
===================

Optional export target: one page per contact in an "Enhanced Attribution"
database that lives under a parent Notion page.

Setup:
1. Notion -> Settings -> Integrations -> create an internal integration
2. Share the parent page with the integration
3. Set NOTION_INTEGRATION_SECRET and NOTION_PAGE_URL in .env
"""

import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from integrations.base import RestClient
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("notion_client")

NOTION_API_URL = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
ATTRIBUTION_DATABASE_TITLE = "Enhanced Attribution"

_PAGE_ID_RE = re.compile(r"([a-f0-9]{32})(?:[?#]|$)", re.IGNORECASE)

CHANNEL_OPTIONS = [
    {"name": "Calendly", "color": "blue"},
    {"name": "Close", "color": "green"},
    {"name": "Typeform", "color": "orange"},
    {"name": "Unknown", "color": "gray"},
]

ATTRIBUTION_DATABASE_PROPERTIES: Dict[str, Any] = {
    "Name": {"title": {}},
    "Email": {"email": {}},
    "Company": {"rich_text": {}},
    "Status": {"select": {"options": [
        {"name": "Lead", "color": "blue"},
        {"name": "Opportunity", "color": "yellow"},
        {"name": "Customer", "color": "green"},
        {"name": "Churned", "color": "red"},
    ]}},
    "AttributionCertainty": {"number": {"format": "percent"}},
    "FirstTouchChannel": {"select": {"options": CHANNEL_OPTIONS}},
    "LastTouchChannel": {"select": {"options": CHANNEL_OPTIONS}},
    "Total Touchpoints": {"number": {}},
    "First Touch": {"rich_text": {}},
    "Last Touch": {"rich_text": {}},
    "Attribution Model": {"rich_text": {}},
    "Last Updated": {"date": {}},
}


def extract_page_id(url: Optional[str]) -> str:
    """Pull the 32-hex page id off the end of a Notion page URL."""
    match = _PAGE_ID_RE.search(url or "")
    if not match:
        raise ConfigError(f"Failed to extract page ID from '{url}'", setting="NOTION_PAGE_URL")
    return match.group(1)


def _text(content: str) -> List[Dict]:
    return [{"type": "text", "text": {"content": content}}]


def _channel(touch: Optional[Dict]) -> str:
    return (touch or {}).get("source", "unknown").capitalize()


def _touch_label(touch: Optional[Dict]) -> str:
    if not touch:
        return "None"
    return f"{touch.get('source')} - {touch.get('type')}"


class NotionClient(RestClient):
    """Notion connector for attribution exports."""

    NAME = "Notion"
    BASE_URL = NOTION_API_URL
    ENV_KEY = "NOTION_INTEGRATION_SECRET"
    FEATURES = ["attribution_export"]
    HEALTH_ENDPOINT = "/users/me"

    # Notion averages 3 requests per second
    RATE_LIMIT = 3
    RATE_WINDOW = 1

    def __init__(self, api_key: Optional[str] = None, page_url: Optional[str] = None, **kwargs):
        super().__init__(api_key, **kwargs)
        self.page_url = page_url if page_url is not None else os.getenv("NOTION_PAGE_URL", "")
        self.session.headers["Notion-Version"] = NOTION_VERSION

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.page_url)

    @property
    def page_id(self) -> str:
        return extract_page_id(self.page_url)

    def list_child_databases(self) -> List[Dict]:
        """Every database nested directly under the parent page."""
        databases: List[Dict] = []
        params: Dict[str, Any] = {"page_size": 100}
        while True:
            data = self.get(f"/blocks/{self.page_id}/children", params)
            for block in data.get("results", []):
                if block.get("type") == "child_database":
                    databases.append(self.get(f"/databases/{block['id']}"))
            if not data.get("has_more"):
                break
            params["start_cursor"] = data.get("next_cursor")
        return databases

    def find_database_by_title(self, title: str) -> Optional[Dict]:
        target = title.lower()
        for db in self.list_child_databases():
            parts = db.get("title") or []
            db_title = (parts[0].get("plain_text") if parts else "") or ""
            if db_title.lower() == target:
                return db
        return None

    def create_database(self, title: str, properties: Dict[str, Any]) -> Dict:
        """Return the database with this title, creating it if needed."""
        existing = self.find_database_by_title(title)
        if existing:
            return existing
        logger.info("Creating Notion database '%s'", title)
        return self.post("/databases", {
            "parent": {"type": "page_id", "page_id": self.page_id},
            "title": _text(title),
            "properties": properties,
        })

    def find_page_by_email(self, database_id: str, email: str) -> Optional[Dict]:
        data = self.post(f"/databases/{database_id}/query", {
            "filter": {"property": "Email", "email": {"equals": email}},
        })
        results = data.get("results", [])
        return results[0] if results else None

    def create_attribution_page(self, database_id: str, contact: Dict,
                                attribution: Dict) -> Dict:
        """Create (or update, by email) a contact's attribution page."""
        timeline = attribution.get("timeline") or []
        first, last = attribution.get("first_touch"), attribution.get("last_touch")
        properties = {
            "Name": {"title": _text(contact.get("name") or "Unnamed Contact")},
            "Email": {"email": contact.get("email") or None},
            "Company": {"rich_text": _text(contact.get("company") or "")},
            "AttributionCertainty": {"number": attribution.get("attribution_certainty", 0)},
            "FirstTouchChannel": {"select": {"name": _channel(first)}},
            "LastTouchChannel": {"select": {"name": _channel(last)}},
            "Total Touchpoints": {"number": len(timeline)},
            "First Touch": {"rich_text": _text(_touch_label(first))},
            "Last Touch": {"rich_text": _text(_touch_label(last))},
            "Attribution Model": {"rich_text": _text(attribution.get("attribution_model") or "")},
            "Last Updated": {"date": {"start": datetime.now(timezone.utc).isoformat()}},
        }

        existing = None
        if contact.get("email"):
            existing = self.find_page_by_email(database_id, contact["email"])
        if existing:
            return self.request("PATCH", f"/pages/{existing['id']}", json_body={"properties": properties})
        return self.post("/pages", {"parent": {"database_id": database_id}, "properties": properties})

    def setup_attribution_database(self) -> Dict:
        return self.create_database(ATTRIBUTION_DATABASE_TITLE, ATTRIBUTION_DATABASE_PROPERTIES)
