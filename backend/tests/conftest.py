"""
Test configuration and fixtures.

Everything runs against the in-memory store. Authentication is replaced
through ``dependency_overrides``: HTTP requests name their user with the
``X-Test-User`` header (``X-Test-Admin: 1`` adds the admin claim), WebSocket
connections with the ``user`` / ``admin`` query parameters.
"""
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable, Optional

import pytest
from fastapi import FastAPI, HTTPException, Request, WebSocket, status
from httpx import ASGITransport, AsyncClient

from portal.auth import AuthenticatedUser, get_current_user, get_optional_user, get_websocket_user
from portal.config import Settings
from portal.dependencies import PortalServices
from portal.directory import StaticUserDirectory
from portal.live import LiveQueryHub
from portal.main import create_app
from portal.read_state import ReadStateTracker
from portal.schemas import Reader
from portal.stores.memory import MemoryAnnouncementStore

ADMIN = {'X-Test-User': 'admin-1', 'X-Test-Admin': '1'}
STUDENT = {'X-Test-User': 'student-1'}
STUDENT_2 = {'X-Test-User': 'student-2'}

BASE_TIME = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class StepClock:
  """Each call returns a timestamp one minute after the previous one."""

  def __init__(self, start: datetime = BASE_TIME):
    self.now = start

  def __call__(self) -> Optional[datetime]:
    current = self.now
    self.now = self.now + timedelta(minutes=1)
    return current


def _user(identity: Optional[str], admin: bool) -> Optional[AuthenticatedUser]:
  if not identity:
    return None
  return AuthenticatedUser({
    'id': identity,
    'email': f'{identity}@campus.edu',
    'app_metadata': {'admin': True} if admin else {},
  })


def override_current_user(request: Request) -> AuthenticatedUser:
  user = _user(request.headers.get('x-test-user'), request.headers.get('x-test-admin') == '1')
  if user is None:
    raise HTTPException(status.HTTP_401_UNAUTHORIZED, 'Missing Authorization header')
  return user


def override_optional_user(request: Request) -> Optional[AuthenticatedUser]:
  return _user(request.headers.get('x-test-user'), request.headers.get('x-test-admin') == '1')


def override_websocket_user(websocket: WebSocket) -> AuthenticatedUser:
  return _user(websocket.query_params.get('user', 'student-1'), websocket.query_params.get('admin') == '1')


def make_services(clock: Callable = None, **store_options) -> PortalServices:
  store = MemoryAnnouncementStore(clock=clock or StepClock(), **store_options)
  hub = LiveQueryHub(store)
  directory = StaticUserDirectory({
    'student-1': Reader(id='student-1', name='Asha Rao', email='asha@campus.edu', dept='CSE'),
    'student-2': Reader(id='student-2', name='Ben Okafor', email='ben@campus.edu', dept='ECE'),
  })
  return PortalServices(store=store, hub=hub, tracker=ReadStateTracker(store), directory=directory)


def make_app(services: PortalServices, **settings_overrides) -> FastAPI:
  settings = Settings(_env_file=None, STORE_BACKEND='memory', **settings_overrides)
  app = create_app(settings=settings, services=services)
  app.dependency_overrides[get_current_user] = override_current_user
  app.dependency_overrides[get_optional_user] = override_optional_user
  app.dependency_overrides[get_websocket_user] = override_websocket_user
  return app


@pytest.fixture
def clock() -> StepClock:
  return StepClock()


@pytest.fixture
def store(clock) -> MemoryAnnouncementStore:
  return MemoryAnnouncementStore(clock=clock)


@pytest.fixture
async def hub(store) -> AsyncGenerator[LiveQueryHub, None]:
  hub = LiveQueryHub(store)
  yield hub
  await hub.close()


@pytest.fixture
def tracker(store) -> ReadStateTracker:
  return ReadStateTracker(store)


@pytest.fixture
async def services() -> AsyncGenerator[PortalServices, None]:
  services = make_services()
  yield services
  await services.close()


@pytest.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
  app = make_app(services)
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url='http://test') as ac:
    yield ac
  app.dependency_overrides.clear()


async def seed(store, count: int, category: str = 'general'):
  ids = []
  for i in range(count):
    ids.append(await store.create(f'Notice {i}', f'Body of notice {i}', category))
  return ids
