from typing import Iterable, List, Optional

from .errors import ValidationError
from .schemas import Announcement, AnnouncementStats, Category

STATUS_FILTERS = ('all', 'active', 'inactive')


def _matches_status(announcement: Announcement, status_filter: str) -> bool:
  if status_filter == 'all':
    return True
  if status_filter == 'active':
    return announcement.active
  if status_filter == 'inactive':
    return not announcement.active
  return announcement.category == status_filter


def search_announcements(
  announcements: Iterable[Announcement],
  search: Optional[str] = None,
  status_filter: Optional[str] = 'all',
) -> List[Announcement]:
  """
  Management list filtering.

  Args:
    search: case-insensitive substring matched against title and message
    status_filter: 'all', 'active', 'inactive' or a category value
  """
  status_filter = status_filter or 'all'
  if status_filter not in STATUS_FILTERS and status_filter not in {c.value for c in Category}:
    raise ValidationError(f'Unknown filter {status_filter!r}', field='status')

  needle = (search or '').strip().lower()
  result = []
  for a in announcements:
    if needle and needle not in a.title.lower() and needle not in a.message.lower():
      continue
    if not _matches_status(a, status_filter):
      continue
    result.append(a)
  return result


def announcement_stats(announcements: Iterable[Announcement]) -> AnnouncementStats:
  items = list(announcements)
  by_category = {c.value: 0 for c in Category}
  for a in items:
    by_category[Category(a.category).value] += 1
  active = sum(1 for a in items if a.active)
  return AnnouncementStats(
    total=len(items),
    active=active,
    inactive=len(items) - active,
    by_category=by_category,
  )
