from __future__ import annotations

import os

BOOKINGS_TABLE = os.environ.get("BOOKINGS_TABLE", os.environ.get("TABLE_NAME", "bookings"))
RESOURCES_TABLE = os.environ.get("RESOURCES_TABLE", "resources")
SERIES_TABLE = os.environ.get("SERIES_TABLE", "recurring_series")
ACTIVITY_TABLE = os.environ.get("ACTIVITY_TABLE", "activity")
WAITLIST_TABLE = os.environ.get("WAITLIST_TABLE", "waitlist")

# Rolling window for series materialization, in weeks from today
GENERATE_WEEKS_AHEAD = int(os.environ.get("GENERATE_WEEKS_AHEAD", "4"))
MAX_SERIES_INSTANCES = int(os.environ.get("MAX_SERIES_INSTANCES", "52"))
DEFAULT_HORIZON_DAYS = 365

UNDO_WINDOW_MS = int(os.environ.get("UNDO_WINDOW_MS", "10000"))

METRICS_NAMESPACE = os.environ.get("POWERTOOLS_METRICS_NAMESPACE", "MakerspaceScheduler")
