"""
Per-user read state over announcement snapshots.

The module-level functions are pure and work on any snapshot. A
``NotificationFeed`` binds one user to a live subscription and keeps the
badge count current, including optimistic reads that the store has not
reflected in a snapshot yet.
"""

import asyncio
import inspect
import logging
from typing import Callable, Iterable, List, Optional, Set, Union

from .errors import PortalError, ValidationError
from .live import LiveQueryHub, Subscription
from .schemas import Announcement, Category, NotificationItem
from .stores.base import AnnouncementStore
from .utils.formatting import format_timestamp

logger = logging.getLogger(__name__)

TAB_ALL = 'all'
TAB_UNREAD = 'unread'

Tab = Union[str, Category]


def parse_tab(tab: Optional[str]) -> Tab:
  if tab is None or tab == TAB_ALL:
    return TAB_ALL
  if tab == TAB_UNREAD:
    return TAB_UNREAD
  try:
    return Category(tab)
  except ValueError:
    allowed = ', '.join([TAB_ALL, TAB_UNREAD] + [c.value for c in Category])
    raise ValidationError(f'Unknown tab {tab!r}; expected one of: {allowed}', field='tab')


def is_read(announcement: Announcement, identity: str) -> bool:
  return identity in announcement.read_by


def unread_count(announcements: Iterable[Announcement], identity: str) -> int:
  """Active announcements the identity has not read. Inactive ones never count."""
  return sum(1 for a in announcements if a.active and not is_read(a, identity))


def filter_announcements(
  announcements: Iterable[Announcement],
  identity: str,
  tab: Optional[str] = TAB_ALL,
) -> List[Announcement]:
  selected = parse_tab(tab)
  if selected == TAB_ALL:
    return list(announcements)
  if selected == TAB_UNREAD:
    return [a for a in announcements if not is_read(a, identity)]
  return [a for a in announcements if a.category == selected]


def to_items(announcements: Iterable[Announcement], identity: str, tz=None) -> List[NotificationItem]:
  return [
    NotificationItem(
      announcement=a,
      is_read=is_read(a, identity),
      formatted_date=format_timestamp(a.created_at, tz=tz),
    )
    for a in announcements
  ]


class ReadStateTracker:
  def __init__(self, store: AnnouncementStore):
    self.store = store

  async def mark_as_read(self, announcement_id: str, identity: str) -> None:
    """Record the read. Failures propagate; callers must not assume success."""
    try:
      await self.store.mark_read(announcement_id, identity)
    except PortalError as e:
      logger.warning(
        f'[MARK_READ] id={announcement_id} identity={identity} failed ({type(e).__name__}): {e.message}'
      )
      raise


FeedListener = Callable[['NotificationFeed'], Union[None, object]]


class NotificationFeed:
  """One user's live notification list and unread badge.

  Every snapshot from the subscription replaces the local list. Reads the
  user made optimistically stay applied until a snapshot shows them, the
  announcement leaves the result set, or the store rejects the write (which
  rolls the item back to unread).
  """

  def __init__(
    self,
    hub: LiveQueryHub,
    tracker: ReadStateTracker,
    identity: str,
    max_results: Optional[int] = None,
  ):
    self.hub = hub
    self.tracker = tracker
    self.identity = identity
    self.max_results = max_results
    self._snapshot: List[Announcement] = []
    self._pending: Set[str] = set()
    self._listeners: List[FeedListener] = []
    self._subscription: Optional[Subscription] = None

  @property
  def subscription(self) -> Optional[Subscription]:
    return self._subscription

  @property
  def degraded(self) -> bool:
    return bool(self._subscription and self._subscription.degraded)

  async def open(self) -> 'NotificationFeed':
    if self._subscription is None:
      self._subscription = await self.hub.subscribe(
        on_update=self.apply_snapshot,
        max_results=self.max_results,
      )
      await self.apply_snapshot(self._subscription.snapshot)
    return self

  def close(self) -> None:
    if self._subscription is not None:
      self._subscription.unsubscribe()

  async def __aenter__(self):
    return await self.open()

  async def __aexit__(self, *exc_info):
    self.close()

  def on_change(self, listener: FeedListener) -> Callable[[], None]:
    self._listeners.append(listener)

    def remove():
      if listener in self._listeners:
        self._listeners.remove(listener)

    return remove

  async def apply_snapshot(self, snapshot: List[Announcement]) -> None:
    self._snapshot = list(snapshot)
    present = {a.id: a for a in self._snapshot}
    self._pending = {
      announcement_id for announcement_id in self._pending
      if announcement_id in present and not is_read(present[announcement_id], self.identity)
    }
    await self._changed()

  @property
  def announcements(self) -> List[Announcement]:
    """The current snapshot with this user's pending reads applied."""
    if not self._pending:
      return list(self._snapshot)
    return [
      a.model_copy(update={'read_by': a.read_by + [self.identity]}) if a.id in self._pending else a
      for a in self._snapshot
    ]

  @property
  def unread_count(self) -> int:
    return unread_count(self.announcements, self.identity)

  def is_read(self, announcement_id: str) -> bool:
    if announcement_id in self._pending:
      return True
    return any(a.id == announcement_id and is_read(a, self.identity) for a in self._snapshot)

  def items(self, tab: Optional[str] = TAB_ALL, tz=None) -> List[NotificationItem]:
    return to_items(filter_announcements(self.announcements, self.identity, tab), self.identity, tz=tz)

  async def mark_as_read(self, announcement_id: str) -> None:
    if self.is_read(announcement_id):
      return
    self._pending.add(announcement_id)
    await self._changed()
    try:
      await self.tracker.mark_as_read(announcement_id, self.identity)
    except PortalError:
      self._pending.discard(announcement_id)
      await self._changed()
      raise

  async def _changed(self) -> None:
    for listener in list(self._listeners):
      try:
        result = listener(self)
        if inspect.isawaitable(result):
          await result
      except asyncio.CancelledError:
        raise
      except Exception as e:
        logger.exception(f'[FEED] Listener failed: {e}')
