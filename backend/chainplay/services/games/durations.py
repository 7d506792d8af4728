import re
from datetime import timedelta

from chainplay.errors import InvalidDuration

SECONDS = 1
MINUTES = 60 * SECONDS
HOURS = 60 * MINUTES
DAYS = 24 * HOURS

_DURATION_RE = re.compile(r'(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?')


def parse_duration(value: str) -> timedelta:
    """Parse "1h", "30m", "2h30m", "1d2h30m", "45s" into a timedelta."""
    if not value or not isinstance(value, str) or not value.strip():
        raise InvalidDuration('Duration must be a non-empty string')
    match = _DURATION_RE.fullmatch(value.strip().lower())
    if not match:
        raise InvalidDuration()
    days, hours, minutes, seconds = (int(g or 0) for g in match.groups())
    total = days * DAYS + hours * HOURS + minutes * MINUTES + seconds * SECONDS
    if total == 0:
        raise InvalidDuration('Duration must be greater than 0')
    return timedelta(seconds=total)


def format_duration(delta: timedelta, round_off: bool = True) -> str:
    total = int(delta.total_seconds())
    if total < 0:
        return '-' + format_duration(timedelta(seconds=-total), round_off)

    days, rest = divmod(total, DAYS)
    hours, rest = divmod(rest, HOURS)
    minutes, seconds = divmod(rest, MINUTES)

    parts = []
    if days:
        parts.append(f'{days}d')
    if round_off and days > 2:
        return ''.join(parts)
    if hours:
        parts.append(f'{hours}h')
    if round_off and hours > 9:
        return ''.join(parts)
    if minutes:
        parts.append(f'{minutes}m')
    if round_off and minutes > 9:
        return ''.join(parts)
    if seconds:
        parts.append(f'{seconds}s')
    return ''.join(parts) or '0s'
