"""
Pipeline Pulse — User Resolver
===============================
Maps Close user ids and free-text rep names to close_users rows so the
dashboard never shows "Unknown" reps. Users are cached in memory for five
minutes; if a refresh fails the stale list is served.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_all

logger = setup_logger("user_resolver")

USER_CACHE_TTL = 300
DEFAULT_ROLE = "Sales Rep"

# Per-rep metrics a sales team member carries; unseen reps start at zero
ZERO_MEMBER_METRICS: Dict[str, Any] = {
    "closed": 0,
    "cash_collected": 0,
    "contracted_value": 0,
    "calls": 0,
    "call1": 0,
    "call2": 0,
    "call2_sits": 0,
    "closing_rate": 0,
    "admin_missing_percent": 0,
    "deals_created": 0,
    "meetings_scheduled": 0,
    "meetings_completed": 0,
}


def display_name(user: Dict) -> str:
    first = (user.get("first_name") or "").strip()
    last = (user.get("last_name") or "").strip()
    if first and last:
        return f"{first} {last}"
    return first or last or "Unknown"


class UserResolver:
    """Cached lookups over the close_users table."""

    def __init__(self, ttl_seconds: int = USER_CACHE_TTL, loader=None):
        self.ttl_seconds = ttl_seconds
        self._loader = loader or self._load_from_db
        self._users: Optional[List[Dict]] = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    @staticmethod
    def _load_from_db() -> List[Dict]:
        return fetch_all("close_users", order_by="created_at", desc=True)

    def get_all_users(self) -> List[Dict]:
        with self._lock:
            if self._users is not None and time.time() - self._loaded_at < self.ttl_seconds:
                return self._users
            try:
                users = [{**u, "name": display_name(u)} for u in self._loader()]
            except Exception as e:
                logger.error("Failed to load close users: %s", e)
                return self._users if self._users is not None else []
            self._users = users
            self._loaded_at = time.time()
            logger.debug("Cached %d close users", len(users))
            return users

    def clear_cache(self) -> None:
        with self._lock:
            self._users = None
            self._loaded_at = 0.0

    def get_user_by_close_id(self, close_id: Optional[str]) -> Optional[Dict]:
        if not close_id:
            return None
        return next((u for u in self.get_all_users() if u.get("close_id") == close_id), None)

    def get_user_by_email(self, email: Optional[str]) -> Optional[Dict]:
        if not email:
            return None
        target = email.strip().lower()
        return next(
            (u for u in self.get_all_users() if (u.get("email") or "").lower() == target),
            None,
        )

    def get_user_by_name(self, name: Optional[str]) -> Optional[Dict]:
        """Exact, then case-insensitive, then any overlapping name part."""
        if not name:
            return None
        users = self.get_all_users()

        for user in users:
            if user["name"] == name:
                return user

        lowered = name.lower()
        for user in users:
            if user["name"].lower() == lowered:
                return user

        parts = lowered.split()
        for user in users:
            user_parts = user["name"].lower().split()
            if any(p == up or p in up or up in p for p in parts for up in user_parts):
                return user
        return None

    def _member_for(self, user: Dict) -> Dict:
        return {
            "id": user.get("close_id"),
            "name": user["name"],
            "role": user.get("role") or DEFAULT_ROLE,
            **ZERO_MEMBER_METRICS,
        }

    def resolve_dashboard_users(self, dashboard: Dict) -> Dict:
        """
        Fill in rep names on dashboard["sales_team"].

        An empty team is built from all known users. Otherwise unnamed members
        are resolved by Close id (or labelled "User <id>") and active users
        missing from the team are appended with zeroed metrics.
        """
        if not dashboard:
            return dashboard
        users = self.get_all_users()
        team = dashboard.get("sales_team") or []

        if not team:
            dashboard["sales_team"] = [
                self._member_for(u) for u in users if u["name"] != "Unknown"
            ]
            return dashboard

        resolved = []
        for member in team:
            if member.get("name") and member["name"] != "Unknown":
                resolved.append(member)
                continue
            user = self.get_user_by_close_id(member.get("id"))
            if user:
                resolved.append({
                    **member,
                    "name": user["name"],
                    "role": user.get("role") or DEFAULT_ROLE,
                })
            else:
                member_id = str(member.get("id") or "")
                resolved.append({
                    **member,
                    "name": f"User {member_id[:8]}" if member_id else "User Unknown",
                    "role": member.get("role") or DEFAULT_ROLE,
                })

        known = {m.get("id") for m in resolved}
        for user in users:
            if user.get("close_id") not in known and user.get("status") != "inactive":
                resolved.append(self._member_for(user))

        dashboard["sales_team"] = resolved
        return dashboard


user_resolver = UserResolver()
