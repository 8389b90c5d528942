"""In-process announcement store for local development and tests."""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..errors import NotFoundError, UnsupportedQueryShape
from ..schemas import Announcement, clean_category, clean_message, clean_title
from .base import AnnouncementStore, clean_identity, clean_update_fields, sort_newest_first, utcnow

logger = logging.getLogger(__name__)


class MemoryAnnouncementStore(AnnouncementStore):
  """Dict-backed store.

  ``ordered_queries_supported=False`` makes filtered + ordered queries fail
  with ``UnsupportedQueryShape``, the way a document store without the
  composite index would.
  """

  def __init__(
    self,
    clock: Callable[[], datetime] = utcnow,
    ordered_queries_supported: bool = True,
  ):
    super().__init__()
    self._rows: Dict[str, Dict[str, Any]] = {}
    self._lock = asyncio.Lock()
    self._clock = clock
    self.ordered_queries_supported = ordered_queries_supported

  @staticmethod
  def _to_model(row: Dict[str, Any]) -> Announcement:
    return Announcement(**{**row, 'read_by': list(row['read_by'])})

  async def create(self, title: str, message: str, category: Any = None) -> str:
    row = {
      'id': uuid.uuid4().hex,
      'title': clean_title(title),
      'message': clean_message(message),
      'category': clean_category(category),
      'active': True,
      'created_at': self._clock(),
      'read_by': [],
    }
    async with self._lock:
      self._rows[row['id']] = row
    logger.debug(f'[CREATE] Announcement {row["id"]} created')
    await self._notify()
    return row['id']

  async def update(self, announcement_id: str, fields: Dict[str, Any]) -> Announcement:
    cleaned = clean_update_fields(fields)
    async with self._lock:
      row = self._rows.get(announcement_id)
      if row is None:
        raise NotFoundError(announcement_id)
      row.update(cleaned)
      updated = self._to_model(row)
    await self._notify()
    return updated

  async def toggle_active(self, announcement_id: str) -> Announcement:
    async with self._lock:
      row = self._rows.get(announcement_id)
      if row is None:
        raise NotFoundError(announcement_id)
      row['active'] = not row['active']
      updated = self._to_model(row)
    await self._notify()
    return updated

  async def delete(self, announcement_id: str) -> None:
    async with self._lock:
      removed = self._rows.pop(announcement_id, None)
    if removed is not None:
      await self._notify()

  async def mark_read(self, announcement_id: str, identity: str) -> None:
    identity = clean_identity(identity)
    async with self._lock:
      row = self._rows.get(announcement_id)
      if row is None:
        raise NotFoundError(announcement_id)
      if identity in row['read_by']:
        return
      row['read_by'].append(identity)
    await self._notify()

  async def get(self, announcement_id: str) -> Announcement:
    async with self._lock:
      row = self._rows.get(announcement_id)
      if row is None:
        raise NotFoundError(announcement_id)
      return self._to_model(row)

  async def query(
    self,
    active: Optional[bool] = None,
    ordered: bool = True,
    limit: Optional[int] = None,
  ) -> List[Announcement]:
    if ordered and active is not None and not self.ordered_queries_supported:
      raise UnsupportedQueryShape(
        'Filtered query with created_at ordering needs a composite index',
        index_hint='announcements(active, created_at desc)',
      )

    async with self._lock:
      items = [self._to_model(row) for row in self._rows.values()]

    if active is not None:
      items = [a for a in items if a.active == active]
    if ordered:
      items = sort_newest_first(items)
    if limit is not None:
      items = items[:limit]
    return items
