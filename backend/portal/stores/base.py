"""
Announcement store interface.

A store owns durable CRUD for announcement records plus the atomic
add-to-set used for read tracking. Stores notify change listeners after
every successful write so live queries can refresh.
"""

import abc
import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..errors import ValidationError
from ..schemas import Announcement, clean_category, clean_message, clean_title

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], Union[None, Awaitable[None]]]

UPDATABLE_FIELDS = ('title', 'message', 'category', 'active')


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def _missing_last_key(announcement: Announcement):
  created_at = announcement.created_at
  if created_at is None:
    return (1, 0.0, announcement.id)
  return (0, -created_at.timestamp(), announcement.id)


def sort_newest_first(announcements: Sequence[Announcement]) -> List[Announcement]:
  """Order by created_at descending; unstamped records last; ties broken by id."""
  return sorted(announcements, key=_missing_last_key)


def clean_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
  """Validate a partial update and return the normalised field values."""
  unknown = set(fields) - set(UPDATABLE_FIELDS)
  if unknown:
    raise ValidationError(f'Cannot update field(s): {", ".join(sorted(unknown))}')
  if not fields:
    raise ValidationError('No fields to update')

  cleaned: Dict[str, Any] = {}
  if 'title' in fields:
    cleaned['title'] = clean_title(fields['title'])
  if 'message' in fields:
    cleaned['message'] = clean_message(fields['message'])
  if 'category' in fields:
    cleaned['category'] = clean_category(fields['category'])
  if 'active' in fields:
    if not isinstance(fields['active'], bool):
      raise ValidationError('Active must be true or false', field='active')
    cleaned['active'] = fields['active']
  return cleaned


def clean_identity(identity: Any) -> str:
  if not isinstance(identity, str) or not identity.strip():
    raise ValidationError('A user identity is required to mark an announcement as read', field='identity')
  return identity


class AnnouncementStore(abc.ABC):
  """Async CRUD over the announcement collection."""

  def __init__(self):
    self._listeners: List[ChangeListener] = []

  @abc.abstractmethod
  async def create(self, title: str, message: str, category: Any = None) -> str:
    ...

  @abc.abstractmethod
  async def update(self, announcement_id: str, fields: Dict[str, Any]) -> Announcement:
    ...

  @abc.abstractmethod
  async def delete(self, announcement_id: str) -> None:
    ...

  @abc.abstractmethod
  async def mark_read(self, announcement_id: str, identity: str) -> None:
    ...

  @abc.abstractmethod
  async def toggle_active(self, announcement_id: str) -> Announcement:
    """Flip ``active`` atomically and return the updated record."""

  @abc.abstractmethod
  async def get(self, announcement_id: str) -> Announcement:
    ...

  @abc.abstractmethod
  async def query(
    self,
    active: Optional[bool] = None,
    ordered: bool = True,
    limit: Optional[int] = None,
  ) -> List[Announcement]:
    """List announcements, optionally filtered on ``active``.

    ``ordered=True`` asks the store for newest-first ordering and may raise
    ``UnsupportedQueryShape`` when the store cannot combine it with the filter.
    With ``ordered=False`` the result order is unspecified.
    """

  def add_listener(self, listener: ChangeListener) -> None:
    if listener not in self._listeners:
      self._listeners.append(listener)

  def remove_listener(self, listener: ChangeListener) -> None:
    if listener in self._listeners:
      self._listeners.remove(listener)

  async def _notify(self) -> None:
    for listener in list(self._listeners):
      try:
        result = listener()
        if inspect.isawaitable(result):
          await result
      except asyncio.CancelledError:
        raise
      except Exception as e:
        logger.exception(f'[STORE] Change listener {listener!r} failed: {e}')

  async def close(self) -> None:
    self._listeners.clear()
