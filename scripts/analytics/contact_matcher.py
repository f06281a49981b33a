"""
Pipeline Pulse — Contact Matcher
=================================
Decides whether an incoming person (a Calendly invitee, a Typeform
respondent) is a contact we already hold, and how sure we are.

Match ladder, strongest first:
    exact   normalized email (gmail dots and +tags ignored)
    high    phone + similar name
    medium  phone only, or similar name at the same company
    low     very similar name only (> 0.85)
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

NAME_SIMILARITY_THRESHOLD = 0.7
NAME_ONLY_THRESHOLD = 0.85
MIN_PHONE_DIGITS = 6

GMAIL_DOMAINS = ("gmail.com", "googlemail.com")


class MatchConfidence(str, Enum):
    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


_CONFIDENCE_ORDER = [
    MatchConfidence.EXACT,
    MatchConfidence.HIGH,
    MatchConfidence.MEDIUM,
    MatchConfidence.LOW,
    MatchConfidence.NONE,
]


@dataclass
class MatchResult:
    contact: Optional[Dict]
    confidence: MatchConfidence
    reason: str

    @property
    def matched(self) -> bool:
        return self.contact is not None


def normalize_email(email: Optional[str]) -> str:
    if not email:
        return ""
    normalized = email.strip().lower()
    user, sep, domain = normalized.partition("@")
    if sep and domain in GMAIL_DOMAINS:
        user = user.split("+", 1)[0].replace(".", "")
        normalized = f"{user}@{domain}"
    return normalized


def normalize_phone(phone: Optional[str]) -> str:
    return re.sub(r"\D", "", phone or "")


def _bigrams(text: str) -> set:
    return {text[i:i + 2] for i in range(len(text) - 1)}


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard similarity of character bigrams, case-insensitive."""
    if not a or not b:
        return 0.0
    left, right = _bigrams(a.lower()), _bigrams(b.lower())
    union = len(left | right)
    return len(left & right) / union if union else 0.0


def names_similar(a: Optional[str], b: Optional[str]) -> Tuple[bool, float]:
    """Returns (similar?, similarity score)."""
    if not a or not b:
        return False, 0.0
    left, right = a.strip().lower(), b.strip().lower()
    if left == right:
        return True, 1.0
    if left in right or right in left:
        return True, 0.9
    score = string_similarity(left, right)
    return score >= NAME_SIMILARITY_THRESHOLD, score


def _best_by_name(name: str, contacts: Iterable[Dict], threshold: Optional[float] = None):
    best, best_score = None, 0.0
    for contact in contacts:
        similar, score = names_similar(contact.get("name"), name)
        ok = score > threshold if threshold is not None else similar
        if ok and score > best_score:
            best, best_score = contact, score
    return best


def find_best_match(candidate: Dict, contacts: Iterable[Dict]) -> MatchResult:
    """Find the stored contact that best matches candidate (email/phone/name/company)."""
    contacts = list(contacts)

    email = candidate.get("email")
    if email:
        target = normalize_email(email)
        for contact in contacts:
            if contact.get("email") and normalize_email(contact["email"]) == target:
                same = contact["email"].strip().lower() == email.strip().lower()
                reason = "Exact email match" if same else "Normalized gmail match"
                return MatchResult(contact, MatchConfidence.EXACT, reason)

    name = candidate.get("name")
    phone = normalize_phone(candidate.get("phone"))
    if phone and name and len(phone) >= MIN_PHONE_DIGITS:
        phone_matches = [c for c in contacts if normalize_phone(c.get("phone")) == phone]
        if phone_matches:
            best = _best_by_name(name, phone_matches)
            if best:
                return MatchResult(best, MatchConfidence.HIGH, "Phone match + similar name")
            return MatchResult(
                phone_matches[0], MatchConfidence.MEDIUM,
                "Phone match with different name",
            )

    company = (candidate.get("company") or "").strip().lower()
    if name and company:
        same_company = [
            c for c in contacts if (c.get("company") or "").strip().lower() == company
        ]
        best = _best_by_name(name, same_company)
        if best:
            return MatchResult(best, MatchConfidence.MEDIUM, "Similar name + company match")

    if name:
        best = _best_by_name(name, contacts, threshold=NAME_ONLY_THRESHOLD)
        if best:
            return MatchResult(best, MatchConfidence.LOW, "Strong name similarity only")

    return MatchResult(None, MatchConfidence.NONE, "No match found")


def meets_confidence(result: MatchResult,
                     minimum: MatchConfidence = MatchConfidence.MEDIUM) -> bool:
    if result.contact is None:
        return False
    return _CONFIDENCE_ORDER.index(result.confidence) <= _CONFIDENCE_ORDER.index(minimum)
