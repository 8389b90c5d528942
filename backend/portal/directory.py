"""
Identity -> display name lookup for the readers list.

Lookups are batched: the admin view resolves every identity it needs with
one ``resolve`` call, never one query per announcement or per reader.
"""

import abc
import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional

from supabase import Client

from .errors import PortalError
from .schemas import Announcement, Reader
from .stores.supabase_store import translate_error

logger = logging.getLogger(__name__)

UNKNOWN_USER_NAME = 'Unknown User'


def unknown_reader(identity: str) -> Reader:
  return Reader(id=identity, name=UNKNOWN_USER_NAME, email=f'ID: {identity}')


class UserDirectory(abc.ABC):
  async def resolve(self, identities: Iterable[str]) -> Dict[str, Reader]:
    """Return a reader for every requested identity, unknown ones included."""
    wanted = list(dict.fromkeys(i for i in identities if i))
    if not wanted:
      return {}
    found = await self._lookup(wanted)
    return {identity: found.get(identity) or unknown_reader(identity) for identity in wanted}

  @abc.abstractmethod
  async def _lookup(self, identities: List[str]) -> Dict[str, Reader]:
    ...


class StaticUserDirectory(UserDirectory):
  def __init__(self, users: Optional[Mapping[str, Reader]] = None):
    self._users: Dict[str, Reader] = dict(users or {})
    self.lookups = 0

  def add(self, reader: Reader) -> None:
    self._users[reader.id] = reader

  async def _lookup(self, identities: List[str]) -> Dict[str, Reader]:
    self.lookups += 1
    return {i: self._users[i] for i in identities if i in self._users}


class SupabaseUserDirectory(UserDirectory):
  """Reads display names from the ``profiles`` table in a single ``in`` query."""

  def __init__(self, client: Client, table: str = 'profiles', timeout: float = 10.0):
    self._client = client
    self._table = table
    self._timeout = timeout

  async def _lookup(self, identities: List[str]) -> Dict[str, Reader]:
    try:
      response = await asyncio.wait_for(
        asyncio.to_thread(
          lambda: self._client.table(self._table)
          .select('id, username, display_name, email, dept')
          .in_('id', identities)
          .execute()
        ),
        timeout=self._timeout,
      )
    except asyncio.CancelledError:
      raise
    except Exception as e:
      raise translate_error(e) from e

    readers = {}
    for row in response.data or []:
      identity = str(row['id'])
      readers[identity] = Reader(
        id=identity,
        name=row.get('display_name') or row.get('username') or UNKNOWN_USER_NAME,
        email=row.get('email') or '',
        dept=row.get('dept') or '',
      )
    return readers


async def readers_for(announcement: Announcement, directory: UserDirectory) -> List[Reader]:
  """Readers of one announcement in the order they read it."""
  try:
    resolved = await directory.resolve(announcement.read_by)
  except PortalError as e:
    # unresolved readers are listed by identity
    logger.error(f'[READERS] Directory lookup failed for {announcement.id}: {e.message}')
    resolved = {}
  return [resolved.get(identity) or unknown_reader(identity) for identity in announcement.read_by]
