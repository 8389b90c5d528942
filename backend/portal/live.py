"""
Live queries over the announcement store.

``LiveQueryHub.subscribe`` returns a ``Subscription`` holding the initial
snapshot: active announcements, newest first, capped at ``max_results``.
Every later change to that result set is pushed to the subscriber, either
through an ``on_update`` callback or by iterating the subscription:

    subscription = await hub.subscribe(on_update=render)
    ...
    subscription.unsubscribe()

    async for snapshot in await hub.subscribe():   # initial snapshot first
      await websocket.send_json(...)

The preferred query asks the store to filter and order. When the store
rejects that shape (``UnsupportedQueryShape``, e.g. no composite index) the
subscription switches to a filter-only query and orders/caps the rows itself
on every refresh. Subscribers see the same contract in both modes.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from .errors import PortalError, UnsupportedQueryShape
from .schemas import Announcement
from .stores.base import AnnouncementStore, sort_newest_first

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 20

Predicate = Callable[[Announcement], bool]
UpdateCallback = Callable[[List[Announcement]], Union[None, Awaitable[None]]]

_CLOSED = object()


class SharedQueries:
  """Runs each distinct store query once per refresh round and hands every
  subscription asking for the same shape its own copy of the rows."""

  def __init__(self, store: AnnouncementStore):
    self._store = store
    self._tasks: Dict[Tuple[Optional[bool], bool, Optional[int]], asyncio.Task] = {}

  async def query(
    self,
    active: Optional[bool] = None,
    ordered: bool = True,
    limit: Optional[int] = None,
  ) -> List[Announcement]:
    key = (active, ordered, limit)
    task = self._tasks.get(key)
    if task is None:
      task = asyncio.ensure_future(self._store.query(active=active, ordered=ordered, limit=limit))
      self._tasks[key] = task
    return list(await asyncio.shield(task))


class Subscription:
  def __init__(
    self,
    hub: 'LiveQueryHub',
    on_update: Optional[UpdateCallback] = None,
    predicate: Optional[Predicate] = None,
    max_results: int = DEFAULT_MAX_RESULTS,
    active_only: bool = True,
  ):
    if max_results < 1:
      raise ValueError('max_results must be at least 1')
    self._hub = hub
    self._on_update = on_update
    self.predicate = predicate
    self.max_results = max_results
    self.active_only = active_only

    self.snapshot: List[Announcement] = []
    self.degraded = False
    self.closed = False
    self._started = False
    self._version = 0
    self._lock = asyncio.Lock()
    self._queue: Optional[asyncio.Queue] = asyncio.Queue() if on_update is None else None

  @property
  def started(self) -> bool:
    return self._started

  async def start(self) -> List[Announcement]:
    """Fetch the initial snapshot. A closed subscription never queries."""
    if self.closed or self._started:
      return self.snapshot
    async with self._lock:
      if self.closed or self._started:
        return self.snapshot
      snapshot = await self._fetch()
      if self.closed:
        return self.snapshot
      self.snapshot = snapshot
      self._started = True
      self._version += 1
    if self._queue is not None:
      self._queue.put_nowait(snapshot)
    return snapshot

  async def refresh(self, shared: Optional[SharedQueries] = None) -> bool:
    """Re-run the query; push the result if it differs from the last one delivered."""
    if self.closed or not self._started:
      return False
    async with self._lock:
      if self.closed:
        return False
      try:
        snapshot = await self._fetch(shared)
      except PortalError as e:
        logger.error(f'[LIVE_QUERY] Refresh failed ({type(e).__name__}), keeping last snapshot: {e.message}')
        return False
      if self.closed or snapshot == self.snapshot:
        return False
      self.snapshot = snapshot
      self._version += 1
      version = self._version

    # delivered outside the lock so a subscriber may write to the store
    await self._deliver(snapshot, version)
    return True

  async def _fetch(self, shared: Optional[SharedQueries] = None) -> List[Announcement]:
    query = shared.query if shared is not None else self._hub.store.query
    active = True if self.active_only else None

    if not self.degraded:
      # the store can only cap for us when it also does all the filtering
      limit = self.max_results if self.predicate is None else None
      try:
        items = await query(active=active, ordered=True, limit=limit)
      except UnsupportedQueryShape as e:
        self.degraded = True
        logger.warning(
          '[LIVE_QUERY] Ordered query unsupported by the store, falling back to '
          f'client-side ordering ({e.message}). Provision the index '
          f'{e.index_hint or "on (active, created_at desc)"} to restore server-side ordering.'
        )
      else:
        if self.predicate is not None:
          items = [a for a in items if self.predicate(a)]
        return items[:self.max_results]

    items = await query(active=active, ordered=False)
    if self.predicate is not None:
      items = [a for a in items if self.predicate(a)]
    return sort_newest_first(items)[:self.max_results]

  async def _deliver(self, snapshot: List[Announcement], version: int) -> None:
    if self.closed or version != self._version:
      return
    if self._queue is not None:
      self._queue.put_nowait(snapshot)
      return
    try:
      result = self._on_update(snapshot)
      if inspect.isawaitable(result):
        await result
    except asyncio.CancelledError:
      raise
    except Exception as e:
      logger.exception(f'[LIVE_QUERY] Subscriber callback failed: {e}')

  def unsubscribe(self) -> None:
    """Stop all further updates. Safe to call more than once, or before start()."""
    if self.closed:
      return
    self.closed = True
    self._hub._discard(self)
    if self._queue is not None:
      self._queue.put_nowait(_CLOSED)

  def __aiter__(self):
    if self._queue is None:
      raise TypeError('Subscriptions with an on_update callback cannot be iterated')
    return self

  async def __anext__(self) -> List[Announcement]:
    item = await self._queue.get()
    if item is _CLOSED:
      # keep the sentinel for any other consumer
      self._queue.put_nowait(_CLOSED)
      raise StopAsyncIteration
    return item

  async def __aenter__(self):
    await self.start()
    return self

  async def __aexit__(self, *exc_info):
    self.unsubscribe()


class LiveQueryHub:
  """Owns the live subscriptions over one store.

  Store change notifications schedule a refresh of every subscription in a
  background task, so writers never wait on subscribers. Within one refresh
  round each distinct query runs once. ``refresh_interval`` adds a periodic
  resync for writes made outside this process.
  """

  def __init__(
    self,
    store: AnnouncementStore,
    default_max_results: int = DEFAULT_MAX_RESULTS,
    refresh_interval: float = 0.0,
  ):
    self.store = store
    self.default_max_results = default_max_results
    self.refresh_interval = refresh_interval
    self._subscriptions: Set[Subscription] = set()
    self._listening = False
    self._resync_task: Optional[asyncio.Task] = None
    self._refresh_task: Optional[asyncio.Task] = None
    self._changed = False

  @property
  def subscription_count(self) -> int:
    return len(self._subscriptions)

  def open(
    self,
    on_update: Optional[UpdateCallback] = None,
    predicate: Optional[Predicate] = None,
    max_results: Optional[int] = None,
    active_only: bool = True,
  ) -> Subscription:
    """Register a subscription without fetching; call ``start()`` on it."""
    subscription = Subscription(
      self,
      on_update=on_update,
      predicate=predicate,
      max_results=max_results or self.default_max_results,
      active_only=active_only,
    )
    self._subscriptions.add(subscription)
    if not self._listening:
      self.store.add_listener(self._on_store_change)
      self._listening = True
    return subscription

  async def subscribe(
    self,
    on_update: Optional[UpdateCallback] = None,
    predicate: Optional[Predicate] = None,
    max_results: Optional[int] = None,
    active_only: bool = True,
  ) -> Subscription:
    subscription = self.open(on_update, predicate, max_results, active_only)
    try:
      await subscription.start()
    except BaseException:
      subscription.unsubscribe()
      raise
    self._ensure_resync()
    return subscription

  def _discard(self, subscription: Subscription) -> None:
    self._subscriptions.discard(subscription)
    if self._subscriptions:
      return
    if self._listening:
      self.store.remove_listener(self._on_store_change)
      self._listening = False
    if self._resync_task is not None:
      self._resync_task.cancel()
      self._resync_task = None

  def _ensure_resync(self) -> None:
    if self.refresh_interval <= 0 or self._resync_task is not None or not self._subscriptions:
      return
    self._resync_task = asyncio.get_running_loop().create_task(self._resync_loop())

  async def _resync_loop(self) -> None:
    while True:
      await asyncio.sleep(self.refresh_interval)
      try:
        await self.refresh_all()
      except Exception as e:
        logger.exception(f'[LIVE_QUERY] Periodic resync failed: {e}')

  def _on_store_change(self) -> None:
    # the writer returns at once; a burst of writes collapses into one more round
    self._changed = True
    if self._refresh_task is None or self._refresh_task.done():
      self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_pending())

  async def _refresh_pending(self) -> None:
    while self._changed:
      self._changed = False
      try:
        await self.refresh_all()
      except Exception as e:
        logger.exception(f'[LIVE_QUERY] Refresh after store change failed: {e}')

  async def wait_idle(self) -> None:
    """Wait until every change notified so far has been delivered."""
    while self._refresh_task is not None and not self._refresh_task.done():
      await asyncio.wait({self._refresh_task})

  async def refresh_all(self) -> None:
    subscriptions = [s for s in self._subscriptions if s.started]
    if subscriptions:
      shared = SharedQueries(self.store)
      await asyncio.gather(*(s.refresh(shared) for s in subscriptions))

  async def close(self) -> None:
    for subscription in list(self._subscriptions):
      subscription.unsubscribe()
    tasks = [t for t in (self._resync_task, self._refresh_task) if t is not None]
    self._resync_task = self._refresh_task = None
    for task in tasks:
      task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def query_newest_first(
  store: AnnouncementStore,
  active: Optional[bool] = None,
  limit: Optional[int] = None,
) -> Tuple[List[Announcement], bool]:
  """One-shot newest-first listing with the same fallback as live subscriptions.

  Returns the rows and whether the degraded (client-sorted) path was used.
  """
  try:
    return await store.query(active=active, ordered=True, limit=limit), False
  except UnsupportedQueryShape as e:
    logger.warning(f'[QUERY] Ordered query unsupported ({e.message}), sorting client-side')
  items = sort_newest_first(await store.query(active=active, ordered=False))
  return (items[:limit] if limit is not None else items), True
