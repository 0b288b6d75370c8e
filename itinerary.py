"""Chronological views over activities, hotels and expenses.

Everything here works on serialized records (plain dicts as returned by the
API) and an explicit ``today`` so the side menu can be rendered for the
client's local date rather than the server's.
"""
import logging
from datetime import date, datetime

log = logging.getLogger(__name__)

DISPLAY_DATE_FORMAT = "%d.%m.%Y"

# marker opacity per bucket
OPACITY = {"today": 1.0, "current": 1.0, "upcoming": 0.7, "past": 0.5}

def parse_day(value):
    """Accept a date, datetime or ISO string (``2024-05-01`` or ``2024-05-01T00:00:00``)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    try:
        return date.fromisoformat(s)
    except ValueError:
        pass
    # browsers send UTC timestamps like 2024-05-01T00:00:00.000Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s).date()

def display_date(d):
    return d.strftime(DISPLAY_DATE_FORMAT)

def _safe_day(item, key):
    try:
        return parse_day(item.get(key))
    except ValueError:
        log.warning("Skipping record %s with bad %s=%r", item.get("id"), key, item.get(key))
        return None

def _group_by_day(items):
    groups = {}
    for d, item in items:
        groups.setdefault(d, []).append(item)
    return [
        {"date": d.isoformat(), "label": display_date(d), "items": groups[d]}
        for d in sorted(groups)
    ]

def activity_state(day, today):
    if day == today:
        return "today"
    return "upcoming" if day > today else "past"

def hotel_state(check_in, check_out, today):
    if check_in <= today < check_out:
        return "current"
    if check_in > today:
        return "upcoming"
    return "past"

def bucket_activities(activities, today):
    buckets = {"today": [], "upcoming": [], "past": []}
    for act in activities:
        d = _safe_day(act, "day")
        if d is None:
            continue
        buckets[activity_state(d, today)].append((d, act))

    for entries in buckets.values():
        entries.sort(key=lambda pair: pair[0])

    return {
        "today": [a for _, a in buckets["today"]],
        "upcoming": _group_by_day(buckets["upcoming"]),
        "past": _group_by_day(buckets["past"]),
    }

def bucket_hotels(hotels, today):
    buckets = {"current": [], "upcoming": [], "past": []}
    for hotel in hotels:
        check_in = _safe_day(hotel, "checkIn")
        check_out = _safe_day(hotel, "checkOut")
        if check_in is None or check_out is None:
            continue
        buckets[hotel_state(check_in, check_out, today)].append((check_in, hotel))

    result = {}
    for name, entries in buckets.items():
        entries.sort(key=lambda pair: pair[0])
        result[name] = [h for _, h in entries]
    return result

def marker_states(activities, hotels, today):
    """Map record id -> {"state", "opacity"} for every datable activity and hotel."""
    states = {}
    for act in activities:
        d = _safe_day(act, "day")
        if d is None:
            continue
        s = activity_state(d, today)
        states[act["id"]] = {"state": s, "opacity": OPACITY[s]}
    for hotel in hotels:
        check_in = _safe_day(hotel, "checkIn")
        check_out = _safe_day(hotel, "checkOut")
        if check_in is None or check_out is None:
            continue
        s = hotel_state(check_in, check_out, today)
        states[hotel["id"]] = {"state": s, "opacity": OPACITY[s]}
    return states

def build_timeline(activities, hotels, today):
    acts = bucket_activities(activities, today)
    stays = bucket_hotels(hotels, today)
    return {
        "today": today.isoformat(),
        "currentHotel": stays["current"][0] if stays["current"] else None,
        "todaysActivities": acts["today"],
        "upcomingActivities": acts["upcoming"],
        "pastActivities": acts["past"],
        "upcomingHotels": stays["upcoming"],
        "pastHotels": stays["past"],
        "markers": marker_states(activities, hotels, today),
    }

def summarize_expenses(expenses):
    total = 0.0
    by_category = {}
    by_day = {}
    for exp in expenses:
        amount = float(exp.get("amount") or 0)
        total += amount
        cat = exp.get("category") or "Uncategorized"
        by_category[cat] = by_category.get(cat, 0.0) + amount
        d = _safe_day(exp, "date")
        if d is not None:
            by_day[d] = by_day.get(d, 0.0) + amount

    return {
        "total": round(total, 2),
        "count": len(expenses),
        "byCategory": [
            {"category": c, "sum": round(s, 2)}
            for c, s in sorted(by_category.items(), key=lambda kv: (-kv[1], kv[0].lower()))
        ],
        "byDay": [{"date": d.isoformat(), "sum": round(by_day[d], 2)} for d in sorted(by_day)],
    }
