"""
DateTime tool — current time for a place. Backs get_time.

LLMs don't know what time it is. This tool does.

Locations resolve through a small alias table of common cities and
abbreviations, then as an IANA zone name ("Europe/Berlin"). Anything
else falls back to the configured default zone, and the answer says so.
"""

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

LOCATION_ZONES = {
    "utc": "UTC", "gmt": "UTC",
    "new york": "America/New_York", "ny": "America/New_York", "nyc": "America/New_York",
    "boston": "America/New_York", "miami": "America/New_York", "washington dc": "America/New_York",
    "dc": "America/New_York", "detroit": "America/Detroit", "ann arbor": "America/Detroit",
    "chicago": "America/Chicago", "austin": "America/Chicago", "dallas": "America/Chicago",
    "houston": "America/Chicago", "denver": "America/Denver", "phoenix": "America/Phoenix",
    "los angeles": "America/Los_Angeles", "la": "America/Los_Angeles",
    "san francisco": "America/Los_Angeles", "seattle": "America/Los_Angeles",
    "portland": "America/Los_Angeles", "oregon": "America/Los_Angeles",
    "california": "America/Los_Angeles", "las vegas": "America/Los_Angeles",
    "london": "Europe/London", "paris": "Europe/Paris", "berlin": "Europe/Berlin",
    "madrid": "Europe/Madrid", "rome": "Europe/Rome", "moscow": "Europe/Moscow",
    "dubai": "Asia/Dubai", "mumbai": "Asia/Kolkata", "delhi": "Asia/Kolkata",
    "bangkok": "Asia/Bangkok", "singapore": "Asia/Singapore", "beijing": "Asia/Shanghai",
    "shanghai": "Asia/Shanghai", "hong kong": "Asia/Hong_Kong", "tokyo": "Asia/Tokyo",
    "seoul": "Asia/Seoul", "sydney": "Australia/Sydney", "auckland": "Pacific/Auckland",
}


class DateTimeTool:
    """Current time and date information."""

    def __init__(self, default_zone: str = "UTC"):
        self.default_zone = default_zone
        logger.info("DateTimeTool initialized (default zone %s)", default_zone)

    def resolve(self, location: str) -> tuple[ZoneInfo, bool]:
        """(zone, matched). matched is False when falling back to the default."""
        key = location.lower().strip()
        name = LOCATION_ZONES.get(key, location.strip())
        if name:
            try:
                return ZoneInfo(name), True
            except (ZoneInfoNotFoundError, ValueError):
                pass
        return ZoneInfo(self.default_zone), False

    def run(self, location: str, now: datetime | None = None) -> str:
        zone, matched = self.resolve(location)
        now_utc = now or datetime.now(timezone.utc)
        local = now_utc.astimezone(zone)
        stamp = local.strftime("%A, %B %d, %Y %I:%M:%S %p %Z")
        if matched:
            return f"Current time in {location}: {stamp} (time zone: {zone.key})"
        return (
            f"I don't know the time zone for '{location}'. "
            f"Current time in {zone.key}: {stamp}"
        )

    async def handle(self, args: dict, context: dict) -> str:
        return self.run(str(args.get("location", "")))
