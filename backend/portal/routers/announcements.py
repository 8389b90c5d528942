import asyncio
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from ..admin_view import announcement_stats, search_announcements
from ..auth import AdminUserDep, CurrentUserDep, OptionalUserDep, WebSocketUserDep
from ..dependencies import DirectoryDep, HubDep, SettingsDep, StoreDep, TrackerDep
from ..directory import readers_for
from ..errors import PortalError, log_portal_error, to_http_exception
from ..live import query_newest_first
from ..read_state import NotificationFeed, filter_announcements, parse_tab, to_items, unread_count
from ..schemas import (
  Announcement,
  AnnouncementCreate,
  AnnouncementStats,
  AnnouncementUpdate,
  LiveSnapshotMessage,
  NotificationFeedResponse,
  ReadersResponse,
  UnreadCountResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/announcements', tags=['announcements'])


@router.get('/', response_model=List[Announcement])
async def list_announcements(
  store: StoreDep,
  user: OptionalUserDep,
  active_only: bool = True,
  search: Optional[str] = None,
  status_filter: Optional[str] = Query(default='all', alias='status'),
):
  """List announcements, newest first. Only admins may include inactive ones."""
  if not active_only and not (user and user.is_admin):
    raise HTTPException(status.HTTP_403_FORBIDDEN, 'Administrator access required to list inactive announcements')
  try:
    items, _ = await query_newest_first(store, active=True if active_only else None)
    return search_announcements(items, search=search, status_filter=status_filter)
  except PortalError as e:
    raise to_http_exception(e, 'list')


@router.get('/notifications', response_model=NotificationFeedResponse)
async def get_notifications(
  store: StoreDep,
  settings: SettingsDep,
  user: CurrentUserDep,
  tab: str = 'all',
):
  """Notification list for the current user with read state and the unread badge count."""
  try:
    parse_tab(tab)
    items, _ = await query_newest_first(store, active=True, limit=settings.live_max_results)
    return NotificationFeedResponse(
      tab=tab,
      unread_count=unread_count(items, user.id),
      items=to_items(filter_announcements(items, user.id, tab), user.id),
    )
  except PortalError as e:
    raise to_http_exception(e, 'notifications')


@router.get('/unread-count', response_model=UnreadCountResponse)
async def get_unread_count(store: StoreDep, settings: SettingsDep, user: CurrentUserDep):
  try:
    items, _ = await query_newest_first(store, active=True, limit=settings.live_max_results)
  except PortalError as e:
    raise to_http_exception(e, 'unread_count')
  return UnreadCountResponse(unread_count=unread_count(items, user.id))


@router.get('/stats', response_model=AnnouncementStats)
async def get_stats(store: StoreDep, user: AdminUserDep):
  try:
    items, _ = await query_newest_first(store)
  except PortalError as e:
    raise to_http_exception(e, 'stats')
  return announcement_stats(items)


@router.websocket('/live')
async def live_announcements(
  websocket: WebSocket,
  hub: HubDep,
  tracker: TrackerDep,
  user: WebSocketUserDep,
  tab: str = 'all',
):
  """
  Live notification feed.

  Server -> client: ``{"type": "snapshot", ...}`` on every change, and
  ``{"type": "error", "detail": ...}`` when an action fails.
  Client -> server: ``{"action": "mark_read", "id": ...}`` and
  ``{"action": "tab", "tab": "unread"}``.
  """
  await websocket.accept()

  state = {'tab': tab}
  try:
    parse_tab(tab)
  except PortalError:
    state['tab'] = 'all'

  outbox: asyncio.Queue = asyncio.Queue()
  feed = NotificationFeed(hub, tracker, user.id)
  # None asks the sender for a fresh snapshot
  feed.on_change(lambda _feed: outbox.put_nowait(None))

  def snapshot_message() -> dict:
    return LiveSnapshotMessage(
      degraded=feed.degraded,
      unread_count=feed.unread_count,
      items=feed.items(state['tab']),
    ).model_dump(mode='json')

  async def sender():
    while True:
      batch = [await outbox.get()]
      while not outbox.empty():
        batch.append(outbox.get_nowait())
      for message in batch:
        if message is not None:
          await websocket.send_json(message)
      # one snapshot covers every change queued so far
      if any(message is None for message in batch):
        await websocket.send_json(snapshot_message())

  async def receiver():
    while True:
      try:
        payload = json.loads(await websocket.receive_text())
      except json.JSONDecodeError:
        outbox.put_nowait({'type': 'error', 'detail': 'Invalid JSON'})
        continue
      action = payload.get('action') if isinstance(payload, dict) else None

      if action == 'mark_read':
        announcement_id = str(payload.get('id') or '')
        try:
          await feed.mark_as_read(announcement_id)
        except PortalError as e:
          log_portal_error(e, 'mark_read', announcement_id)
          outbox.put_nowait({'type': 'error', 'action': 'mark_read', 'id': announcement_id, 'detail': e.user_message})
      elif action == 'tab':
        try:
          parse_tab(payload.get('tab'))
        except PortalError as e:
          outbox.put_nowait({'type': 'error', 'action': 'tab', 'detail': e.user_message})
          continue
        state['tab'] = payload.get('tab')
        outbox.put_nowait(None)
      else:
        outbox.put_nowait({'type': 'error', 'detail': 'Unknown action'})

  tasks = []
  try:
    await feed.open()
    tasks = [asyncio.create_task(sender()), asyncio.create_task(receiver())]
    done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in done:
      exc = task.exception()
      if exc is not None and not isinstance(exc, WebSocketDisconnect):
        raise exc
  except WebSocketDisconnect:
    pass
  except PortalError as e:
    log_portal_error(e, 'live')
    await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
  finally:
    feed.close()
    for task in tasks:
      task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.debug(f'[LIVE] Feed for {user.id} closed')


@router.get('/{announcement_id}', response_model=Announcement)
async def get_announcement(announcement_id: str, store: StoreDep, user: OptionalUserDep):
  try:
    announcement = await store.get(announcement_id)
  except PortalError as e:
    raise to_http_exception(e, 'get', announcement_id)
  if not announcement.active and not (user and user.is_admin):
    raise HTTPException(status.HTTP_404_NOT_FOUND, 'Announcement not found')
  return announcement


@router.post('/', response_model=Announcement, status_code=status.HTTP_201_CREATED)
async def create_announcement(payload: AnnouncementCreate, store: StoreDep, user: AdminUserDep):
  """Create a new announcement (admin only)"""
  try:
    announcement_id = await store.create(payload.title, payload.message, payload.category)
    logger.info(f'[CREATE] {announcement_id} by {user.id}')
    return await store.get(announcement_id)
  except PortalError as e:
    raise to_http_exception(e, 'create')


@router.patch('/{announcement_id}', response_model=Announcement)
async def update_announcement(
  announcement_id: str,
  payload: AnnouncementUpdate,
  store: StoreDep,
  user: AdminUserDep,
):
  """Update title, message, category or visibility (admin only)"""
  try:
    return await store.update(announcement_id, payload.fields())
  except PortalError as e:
    raise to_http_exception(e, 'update', announcement_id)


@router.post('/{announcement_id}/toggle', response_model=Announcement)
async def toggle_announcement(announcement_id: str, store: StoreDep, user: AdminUserDep):
  """Flip active/inactive (admin only)"""
  try:
    return await store.toggle_active(announcement_id)
  except PortalError as e:
    raise to_http_exception(e, 'toggle', announcement_id)


@router.delete('/{announcement_id}', status_code=status.HTTP_204_NO_CONTENT)
async def delete_announcement(announcement_id: str, store: StoreDep, user: AdminUserDep):
  """Delete an announcement (admin only). Deleting a missing id is not an error."""
  try:
    await store.delete(announcement_id)
  except PortalError as e:
    raise to_http_exception(e, 'delete', announcement_id)
  logger.info(f'[DELETE] {announcement_id} by {user.id}')
  return None


@router.post('/{announcement_id}/read', response_model=UnreadCountResponse)
async def mark_announcement_read(
  announcement_id: str,
  store: StoreDep,
  tracker: TrackerDep,
  settings: SettingsDep,
  user: CurrentUserDep,
):
  """Mark an announcement as read by the current user; returns the new badge count."""
  try:
    await tracker.mark_as_read(announcement_id, user.id)
    items, _ = await query_newest_first(store, active=True, limit=settings.live_max_results)
  except PortalError as e:
    raise to_http_exception(e, 'mark_read', announcement_id)
  return UnreadCountResponse(unread_count=unread_count(items, user.id))


@router.get('/{announcement_id}/readers', response_model=ReadersResponse)
async def get_readers(
  announcement_id: str,
  store: StoreDep,
  directory: DirectoryDep,
  user: AdminUserDep,
):
  """Who has read an announcement, resolved to display names in one directory lookup (admin only)"""
  try:
    announcement = await store.get(announcement_id)
  except PortalError as e:
    raise to_http_exception(e, 'readers', announcement_id)
  readers = await readers_for(announcement, directory)
  return ReadersResponse(announcement_id=announcement_id, total=len(readers), readers=readers)
