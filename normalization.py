"""
normalization.py — Normalize stage: canonicalize free-text card fields.

Matching is case-insensitive on trimmed text.  Values that match no
vocabulary entry are kept as written, so staff can fix them during
review; nothing the visitor wrote is ever dropped.
"""

import json
import logging

STRING_FIELDS = (
    "name",
    "email",
    "phone",
    "prayer_request",
    "visit_status",
    "address",
    "age_group",
    "family_info",
)
LIST_FIELDS = ("interests", "keywords")

# ---------------------------------------------------------------------------
# VOCABULARY
# ---------------------------------------------------------------------------

FIRST_VISIT = "First Visit"
SECOND_VISIT = "Second Visit"
REGULAR_ATTENDEE = "Regular attendee"

# (canonical value, substrings that select it, substrings that veto it)
VISIT_STATUS_RULES = [
    (FIRST_VISIT, ("first", "i'm new", "im new", "new here", "new guest"), ()),
    (FIRST_VISIT, ("guest",), ("return",)),
    (SECOND_VISIT, ("second", "2nd"), ()),
    (REGULAR_ATTENDEE, ("regular", "member", "returning", "frequent", "attend"), ()),
]

INTEREST_RULES = [
    ("Volunteering", ("volunteer", "serve", "serving", "get involved", "help out")),
    ("Small Groups", ("small group", "life group", "connect group", "community group", "bible study")),
    ("Youth Ministry", ("youth", "student", "teen")),
    ("Kids Ministry", ("kid", "child", "nursery")),
    ("Worship", ("worship", "music", "band", "choir")),
    ("Missions", ("mission", "outreach")),
]


def _matches(text, needles):
    return any(n in text for n in needles)


def normalize_visit_status(visit_status):
    if not visit_status or not visit_status.strip():
        return None

    lowered = visit_status.lower().strip()
    for canonical, include, exclude in VISIT_STATUS_RULES:
        if _matches(lowered, include) and not _matches(lowered, exclude):
            return canonical

    return visit_status.strip()


def canonical_interest(interest):
    lowered = interest.lower().strip()
    for canonical, include in INTEREST_RULES:
        if _matches(lowered, include):
            return canonical
    return interest.strip()


def normalize_interests(interests):
    """Map interest labels onto the standard options, de-duplicated in first-seen order."""
    if not interests:
        return []

    normalized = []
    seen = set()
    for interest in interests:
        if not interest or not interest.strip():
            continue
        value = canonical_interest(interest)
        if value.lower() in seen:
            continue
        seen.add(value.lower())
        normalized.append(value)
    return normalized


def normalize_keywords(keywords):
    """Campaign keywords are stored lowercase."""
    if not keywords:
        return []

    normalized = []
    for keyword in keywords:
        value = keyword.lower().strip()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


# ---------------------------------------------------------------------------
# RAW EXTRACTION OUTPUT
# ---------------------------------------------------------------------------


def coerce_extracted_fields(data):
    """Force the extraction payload into the known field schema."""
    data = data if isinstance(data, dict) else {}
    fields = {}

    for key in STRING_FIELDS:
        value = data.get(key)
        fields[key] = value if isinstance(value, str) else None

    for key in LIST_FIELDS:
        value = data.get(key)
        fields[key] = [v for v in value if isinstance(v, str)] if isinstance(value, list) else None

    first_time = data.get("first_time_visitor")
    fields["first_time_visitor"] = first_time if isinstance(first_time, bool) else None

    notes = data.get("additional_notes")
    if notes is None or isinstance(notes, str):
        fields["additional_notes"] = notes
    else:
        fields["additional_notes"] = json.dumps(notes)

    unknown = sorted(set(data) - set(fields))
    if unknown:
        logging.debug(f"[normalize] Ignoring unknown extraction fields: {unknown}")
    return fields


def normalize_card_fields(data):
    """Full Normalize stage: coerce the raw payload, then canonicalize categorical fields."""
    fields = coerce_extracted_fields(data)

    visit_status = normalize_visit_status(fields["visit_status"])
    if visit_status is None and fields["first_time_visitor"]:
        visit_status = FIRST_VISIT
    fields["visit_status"] = visit_status
    fields["interests"] = normalize_interests(fields["interests"])
    fields["keywords"] = normalize_keywords(fields["keywords"])
    return fields
