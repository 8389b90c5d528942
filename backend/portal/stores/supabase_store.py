"""
Announcement store on a Supabase (PostgREST) table.

The supabase-py client is synchronous, so every call runs in a worker
thread with ``asyncio.to_thread`` under ``asyncio.wait_for``.

Read tracking uses the ``mark_announcement_read`` Postgres function from
``sql/announcements.sql``, which appends the reader in a single statement.
Deployments without the function fall back to a compare-and-swap update
that only succeeds when ``read_by`` still holds the value that was read.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from ..errors import (
  NotFoundError,
  PermissionDenied,
  PortalError,
  TransientStoreError,
  UnsupportedQueryShape,
  ValidationError,
)
from ..schemas import Announcement, Category, clean_category, clean_message, clean_title
from .base import AnnouncementStore, clean_identity, clean_update_fields

logger = logging.getLogger(__name__)

T = TypeVar('T')

COLUMNS = 'id, title, message, category, active, created_at, read_by'
MARK_READ_FUNCTION = 'mark_announcement_read'
MAX_CAS_ATTEMPTS = 5

# statement timeout, undefined column, bad order clause
_QUERY_SHAPE_CODES = {'57014', '42703', 'PGRST100'}
_PERMISSION_CODES = {'42501', 'PGRST301', 'PGRST302'}
_MISSING_FUNCTION_CODES = {'PGRST202', '42883'}
# invalid_text_representation, e.g. a malformed uuid
_INVALID_TEXT_CODE = '22P02'


def translate_error(
  exc: BaseException,
  ordered_query: bool = False,
  announcement_id: Optional[str] = None,
) -> PortalError:
  """Map a supabase / PostgREST / transport failure onto the portal error taxonomy.

  ``announcement_id`` is the id the request filtered on. An id that is not a
  valid uuid cannot name any row, so it is reported as not found.
  """
  if isinstance(exc, PortalError):
    return exc
  if isinstance(exc, asyncio.TimeoutError):
    return TransientStoreError('Store request timed out', code='STORE_TIMEOUT')
  if isinstance(exc, httpx.HTTPError):
    return TransientStoreError(f'Store transport error: {type(exc).__name__}')
  if isinstance(exc, APIError):
    code = str(exc.code or '')
    if ordered_query and code in _QUERY_SHAPE_CODES:
      return UnsupportedQueryShape(
        f'Ordered query rejected by store ({code})',
        index_hint='announcements(active, created_at desc)',
      )
    if code in _PERMISSION_CODES:
      return PermissionDenied(f'Store denied the request ({code})')
    if code == _INVALID_TEXT_CODE and announcement_id is not None:
      return NotFoundError(announcement_id)
    if code.startswith('23') or code.startswith('22'):
      return ValidationError('The announcement data was rejected by the store')
    return TransientStoreError(f'Store error {code or "unknown"}', details={'store_code': code})
  return TransientStoreError(f'Unexpected store failure: {type(exc).__name__}')


def pg_array_literal(values: List[str]) -> str:
  escaped = ['"' + v.replace('\\', '\\\\').replace('"', '\\"') + '"' for v in values]
  return '{' + ','.join(escaped) + '}'


def _serialise(fields: Dict[str, Any]) -> Dict[str, Any]:
  return {k: (v.value if isinstance(v, Category) else v) for k, v in fields.items()}


class SupabaseAnnouncementStore(AnnouncementStore):
  def __init__(self, client: Client, table: str = 'announcements', timeout: float = 10.0):
    super().__init__()
    self._client = client
    self._table = table
    self._timeout = timeout
    # None until the first mark_read tells us whether the function is deployed
    self._mark_read_function: Optional[bool] = None

  async def _run(
    self,
    fn: Callable[[], T],
    ordered_query: bool = False,
    announcement_id: Optional[str] = None,
  ) -> T:
    try:
      return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout)
    except asyncio.CancelledError:
      raise
    except Exception as e:
      raise translate_error(e, ordered_query=ordered_query, announcement_id=announcement_id) from e

  def _rows(self):
    return self._client.table(self._table)

  async def create(self, title: str, message: str, category: Any = None) -> str:
    payload = {
      'title': clean_title(title),
      'message': clean_message(message),
      'category': clean_category(category).value,
      'active': True,
      'read_by': [],
    }
    # created_at is filled by the column default now()
    response = await self._run(lambda: self._rows().insert(payload).execute())
    if not response.data:
      raise TransientStoreError('Store returned no row for the created announcement')
    announcement_id = str(response.data[0]['id'])
    logger.info(f'[CREATE] Announcement {announcement_id} created')
    await self._notify()
    return announcement_id

  async def update(self, announcement_id: str, fields: Dict[str, Any]) -> Announcement:
    payload = _serialise(clean_update_fields(fields))
    response = await self._run(
      lambda: self._rows().update(payload).eq('id', announcement_id).execute(),
      announcement_id=announcement_id,
    )
    if not response.data:
      raise NotFoundError(announcement_id)
    await self._notify()
    return Announcement(**response.data[0])

  async def delete(self, announcement_id: str) -> None:
    try:
      response = await self._run(
        lambda: self._rows().delete().eq('id', announcement_id).execute(),
        announcement_id=announcement_id,
      )
    except NotFoundError:
      return
    if response.data:
      await self._notify()

  async def get(self, announcement_id: str) -> Announcement:
    response = await self._run(
      lambda: self._rows().select(COLUMNS).eq('id', announcement_id).limit(1).execute(),
      announcement_id=announcement_id,
    )
    if not response.data:
      raise NotFoundError(announcement_id)
    return Announcement(**response.data[0])

  async def query(
    self,
    active: Optional[bool] = None,
    ordered: bool = True,
    limit: Optional[int] = None,
  ) -> List[Announcement]:
    def run():
      q = self._rows().select(COLUMNS)
      if active is not None:
        q = q.eq('active', active)
      if ordered:
        q = q.order('created_at', desc=True, nullsfirst=False).order('id')
      if limit is not None:
        q = q.limit(limit)
      return q.execute()

    response = await self._run(run, ordered_query=ordered and active is not None)
    return [Announcement(**row) for row in (response.data or [])]

  async def mark_read(self, announcement_id: str, identity: str) -> None:
    identity = clean_identity(identity)

    if self._mark_read_function is not False:
      try:
        changed = await self._mark_read_rpc(announcement_id, identity)
        self._mark_read_function = True
      except _MissingFunction:
        logger.warning(
          f'[MARK_READ] Postgres function {MARK_READ_FUNCTION} is not deployed; '
          'using compare-and-swap updates. Apply sql/announcements.sql to enable it.'
        )
        self._mark_read_function = False
      else:
        if changed:
          await self._notify()
        return

    if await self._mark_read_cas(announcement_id, identity):
      await self._notify()

  async def _mark_read_rpc(self, announcement_id: str, identity: str) -> bool:
    params = {'announcement_id': announcement_id, 'reader_id': identity}
    try:
      response = await asyncio.wait_for(
        asyncio.to_thread(lambda: self._client.rpc(MARK_READ_FUNCTION, params).execute()),
        timeout=self._timeout,
      )
    except APIError as e:
      if str(e.code or '') in _MISSING_FUNCTION_CODES:
        raise _MissingFunction() from e
      raise translate_error(e, announcement_id=announcement_id) from e
    except asyncio.CancelledError:
      raise
    except Exception as e:
      raise translate_error(e) from e

    # the function returns null for a missing row, else whether read_by changed
    if response.data is None:
      raise NotFoundError(announcement_id)
    return bool(response.data)

  async def _mark_read_cas(self, announcement_id: str, identity: str) -> bool:
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
      current = await self.get(announcement_id)
      if identity in current.read_by:
        return False

      expected = pg_array_literal(current.read_by)
      new_value = current.read_by + [identity]
      response = await self._run(
        lambda: (
          self._rows()
          .update({'read_by': new_value})
          .eq('id', announcement_id)
          .filter('read_by', 'eq', expected)
          .execute()
        ),
        announcement_id=announcement_id,
      )
      if response.data:
        return True
      logger.debug(f'[MARK_READ] read_by of {announcement_id} changed concurrently (attempt {attempt})')

    raise TransientStoreError(
      f'Could not record read state for {announcement_id} after {MAX_CAS_ATTEMPTS} attempts',
      code='WRITE_CONFLICT',
    )

  async def toggle_active(self, announcement_id: str) -> Announcement:
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
      current = await self.get(announcement_id)
      response = await self._run(
        lambda: (
          self._rows()
          .update({'active': not current.active})
          .eq('id', announcement_id)
          .eq('active', current.active)
          .execute()
        ),
        announcement_id=announcement_id,
      )
      if response.data:
        await self._notify()
        return Announcement(**response.data[0])
      logger.debug(f'[TOGGLE] active of {announcement_id} changed concurrently (attempt {attempt})')

    raise TransientStoreError(
      f'Could not toggle {announcement_id} after {MAX_CAS_ATTEMPTS} attempts',
      code='WRITE_CONFLICT',
    )


class _MissingFunction(Exception):
  pass
