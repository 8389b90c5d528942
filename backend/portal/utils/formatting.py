from datetime import datetime, tzinfo
from typing import Optional

MONTH_ABBR = ('Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec')


def format_timestamp(value: Optional[datetime], tz: Optional[tzinfo] = None, empty: str = '') -> str:
  """
  Format an announcement timestamp as ``Mar 4, 2024, 09:05 AM``.

  Args:
    value: the timestamp; ``None`` for records the store has not stamped yet
    tz: zone to display in (the viewer's); naive values are shown as-is
    empty: returned when there is no timestamp
  """
  if value is None:
    return empty
  if tz is not None and value.tzinfo is not None:
    value = value.astimezone(tz)

  hour = value.hour % 12 or 12
  meridiem = 'AM' if value.hour < 12 else 'PM'
  return f'{MONTH_ABBR[value.month - 1]} {value.day}, {value.year}, {hour:02d}:{value.minute:02d} {meridiem}'
