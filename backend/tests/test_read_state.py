"""
Read state: pure helpers, the tracker and the live notification feed.
"""
import pytest

from portal.errors import NotFoundError, TransientStoreError, ValidationError
from portal.read_state import (
  NotificationFeed,
  filter_announcements,
  is_read,
  parse_tab,
  unread_count,
)
from portal.schemas import Announcement, Category

from conftest import BASE_TIME


def make(id, read_by=(), active=True, category='general'):
  return Announcement(
    id=id, title=f'Title {id}', message='Body', category=category,
    active=active, created_at=BASE_TIME, read_by=list(read_by),
  )


class TestPureHelpers:
  def test_unread_count_ignores_inactive_and_read(self):
    snapshot = [
      make('a'),
      make('b', read_by=['u1']),
      make('c', active=False),
      make('d', read_by=['u2']),
    ]
    assert unread_count(snapshot, 'u1') == 2
    assert unread_count(snapshot, 'u2') == 2
    assert unread_count(snapshot, 'u3') == 3
    assert unread_count([], 'u1') == 0

  def test_is_read(self):
    assert is_read(make('a', read_by=['u1']), 'u1')
    assert not is_read(make('a', read_by=['u1']), 'u2')

  def test_tabs(self):
    snapshot = [
      make('a', category='urgent'),
      make('b', category='event', read_by=['u1']),
      make('c', category='academic'),
    ]
    assert [a.id for a in filter_announcements(snapshot, 'u1', 'all')] == ['a', 'b', 'c']
    assert [a.id for a in filter_announcements(snapshot, 'u1', 'unread')] == ['a', 'c']
    assert [a.id for a in filter_announcements(snapshot, 'u1', 'urgent')] == ['a']
    assert [a.id for a in filter_announcements(snapshot, 'u1', None)] == ['a', 'b', 'c']

  def test_unknown_tab(self):
    with pytest.raises(ValidationError) as exc_info:
      parse_tab('sports')
    assert exc_info.value.field == 'tab'
    assert parse_tab('event') == Category.EVENT


async def test_exam_notice_scenario(store, hub, tracker):
  await store.create('Older', 'Posted earlier')
  subscription = await hub.subscribe()

  announcement_id = await store.create('Exam Notice', 'Exams start Monday', 'academic')
  await hub.wait_idle()
  first = subscription.snapshot[0]
  assert (first.id, first.title, first.category, first.active) == (
    announcement_id, 'Exam Notice', Category.ACADEMIC, True)

  before = {u: unread_count(subscription.snapshot, u) for u in ('u1', 'u2', 'u3')}
  await tracker.mark_as_read(announcement_id, 'u1')
  await tracker.mark_as_read(announcement_id, 'u2')
  await hub.wait_idle()
  after = {u: unread_count(subscription.snapshot, u) for u in ('u1', 'u2', 'u3')}

  assert sorted(subscription.snapshot[0].read_by) == ['u1', 'u2']
  assert is_read(subscription.snapshot[0], 'u1')
  assert after['u3'] == before['u3']
  assert after['u1'] == before['u1'] - 1
  assert after['u2'] == before['u2'] - 1

  await store.update(announcement_id, {'active': False})
  await hub.wait_idle()
  assert announcement_id not in [a.id for a in subscription.snapshot]

  await store.update(announcement_id, {'active': True})
  await hub.wait_idle()
  assert subscription.snapshot[0].id == announcement_id
  await store.delete(announcement_id)
  await hub.wait_idle()
  assert announcement_id not in [a.id for a in subscription.snapshot]


async def test_tracker_propagates_failures(tracker):
  with pytest.raises(NotFoundError):
    await tracker.mark_as_read('missing', 'u1')


class TestNotificationFeed:
  async def test_badge_follows_reads(self, store, hub, tracker):
    ids = [await store.create(f'N{i}', 'Body') for i in range(3)]
    badges = []
    async with NotificationFeed(hub, tracker, 'u1') as feed:
      feed.on_change(lambda f: badges.append(f.unread_count))
      assert feed.unread_count == 3

      await feed.mark_as_read(ids[0])
      await hub.wait_idle()
      assert feed.unread_count == 2
      assert feed.is_read(ids[0])
      assert (await store.get(ids[0])).read_by == ['u1']
      # optimistic change first, then the confirming snapshot
      assert badges[:2] == [2, 2]

      await feed.mark_as_read(ids[0])
      assert feed.unread_count == 2
    assert hub.subscription_count == 0

  async def test_failed_write_rolls_back(self, store, hub, tracker, monkeypatch):
    announcement_id = await store.create('Title', 'Body')
    feed = await NotificationFeed(hub, tracker, 'u1').open()
    seen = []
    feed.on_change(lambda f: seen.append(f.is_read(announcement_id)))

    async def unavailable(*args, **kwargs):
      raise TransientStoreError('connection reset')

    monkeypatch.setattr(store, 'mark_read', unavailable)
    with pytest.raises(TransientStoreError):
      await feed.mark_as_read(announcement_id)

    assert seen == [True, False]
    assert not feed.is_read(announcement_id)
    assert feed.unread_count == 1
    feed.close()

  async def test_pending_read_survives_unrelated_snapshot(self, store, hub, tracker):
    announcement_id = await store.create('Title', 'Body')
    feed = await NotificationFeed(hub, tracker, 'u1').open()
    feed._pending.add(announcement_id)

    await store.create('Another', 'Body')
    await hub.wait_idle()
    assert feed.is_read(announcement_id)
    assert feed.unread_count == 1

    await store.delete(announcement_id)
    await hub.wait_idle()
    assert feed._pending == set()
    feed.close()

  async def test_items_carry_read_flag_and_date(self, store, hub, tracker):
    first = await store.create('First', 'Body', 'event')
    await store.create('Second', 'Body', 'urgent')
    await store.mark_read(first, 'u1')

    async with NotificationFeed(hub, tracker, 'u1') as feed:
      items = feed.items()
      assert [i.announcement.title for i in items] == ['Second', 'First']
      assert [i.is_read for i in items] == [False, True]
      assert items[1].formatted_date == 'Mar 4, 2024, 09:00 AM'
      assert [i.announcement.title for i in feed.items('unread')] == ['Second']
      assert [i.announcement.title for i in feed.items('event')] == ['First']

  async def test_removed_listener_is_not_called(self, store, hub, tracker):
    calls = []
    async with NotificationFeed(hub, tracker, 'u1') as feed:
      remove = feed.on_change(lambda f: calls.append(1))
      remove()
      remove()
      await store.create('Title', 'Body')
      await hub.wait_idle()
    assert calls == []
