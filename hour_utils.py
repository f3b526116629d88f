import re

HOUR_INDEX_PATTERN = re.compile(r"^\s*(\d+)")


def ordinal(value) -> str:
    """Return ``value`` with its English ordinal suffix (``1st``, ``12th``)."""
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return ""
    last, last_two = number % 10, number % 100
    if last == 1 and last_two != 11:
        return f"{number}st"
    if last == 2 and last_two != 12:
        return f"{number}nd"
    if last == 3 and last_two != 13:
        return f"{number}rd"
    return f"{number}th"


def hour_label(value) -> str:
    """Label an hour index the way supervisors see it (``3rd Hour``)."""
    text = ordinal(value)
    return f"{text} Hour" if text else "-"


def parse_hour_index(label) -> int | None:
    """Parse the leading hour number from a label such as ``2nd Hour``."""
    if label is None:
        return None
    if isinstance(label, (int, float)):
        return int(label)
    match = HOUR_INDEX_PATTERN.match(str(label))
    if match:
        return int(match.group(1))
    return None
