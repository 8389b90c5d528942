from types import SimpleNamespace

import httpx
import pytest
from fastapi import HTTPException
from supabase_auth.errors import AuthError, AuthRetryableError

from portal.auth import AuthenticatedUser, _bearer_token, get_optional_user, verify_token


class FakeUser:
  def __init__(self, data):
    self._data = data

  def model_dump(self):
    return dict(self._data)


class FakeAuth:
  def __init__(self, users):
    self.users = users

  def get_user(self, token):
    if token == 'offline-token':
      raise httpx.ConnectError('connection refused')
    if token == 'retryable-token':
      raise AuthRetryableError('Server disconnected', 0)
    if token not in self.users:
      raise AuthError('invalid JWT', 'bad_jwt')
    return SimpleNamespace(user=FakeUser(self.users[token]))


@pytest.fixture
def supabase():
  return SimpleNamespace(auth=FakeAuth({
    'admin-token': {'id': 'admin-1', 'email': 'admin@campus.edu', 'app_metadata': {'admin': True}},
    'teacher-token': {'id': 'teacher-1', 'app_metadata': {'role': 'teacher'}},
    'student-token': {'id': 'student-1', 'app_metadata': None},
  }))


class TestVerifyToken:
  async def test_claims(self, supabase):
    admin = await verify_token(supabase, 'admin-token')
    assert (admin.id, admin.role, admin.is_admin) == ('admin-1', 'admin', True)

    teacher = await verify_token(supabase, 'teacher-token')
    assert (teacher.role, teacher.is_teacher, teacher.is_admin) == ('teacher', True, False)

    student = await verify_token(supabase, 'student-token')
    assert student.role == 'student'
    assert student.claims == {}

  async def test_rejected_token(self, supabase):
    with pytest.raises(HTTPException) as exc_info:
      await verify_token(supabase, 'forged')
    assert exc_info.value.status_code == 401

  @pytest.mark.parametrize('token', ['offline-token', 'retryable-token'])
  async def test_unreachable_auth_service_is_503(self, supabase, token):
    with pytest.raises(HTTPException) as exc_info:
      await verify_token(supabase, token)
    assert exc_info.value.status_code == 503

  async def test_optional_user_does_not_hide_an_outage(self, supabase):
    request = SimpleNamespace(
      headers={},
      app=SimpleNamespace(state=SimpleNamespace(services=SimpleNamespace(supabase=supabase))),
    )
    assert await get_optional_user(request, 'Bearer forged') is None
    with pytest.raises(HTTPException) as exc_info:
      await get_optional_user(request, 'Bearer offline-token')
    assert exc_info.value.status_code == 503


@pytest.mark.parametrize('header', [None, '', 'Basic abc', 'Bearer ', 'Bearer  '])
def test_bad_authorization_headers(header):
  with pytest.raises(HTTPException) as exc_info:
    _bearer_token(header)
  assert exc_info.value.status_code == 401


def test_bearer_token():
  assert _bearer_token('Bearer abc.def') == 'abc.def'
  assert _bearer_token('bearer abc') == 'abc'


def test_admin_claim_must_be_true():
  assert not AuthenticatedUser({'id': 'u', 'app_metadata': {'admin': 'yes'}}).is_admin
