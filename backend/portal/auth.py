import asyncio
import logging
from typing import Annotated, Any, Dict, Optional

import httpx
from fastapi import Depends, Header, HTTPException, Query, Request, WebSocket, WebSocketException, status
from supabase import Client
from supabase_auth.errors import AuthError, AuthRetryableError

from .dependencies import SupabaseClientDep

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_SECONDS = 10.0


class AuthenticatedUser:
  def __init__(self, data: Dict[str, Any]):
    self._data = data

  @property
  def id(self) -> str:
    return self._data.get('id', '')

  @property
  def email(self) -> Optional[str]:
    return self._data.get('email')

  @property
  def claims(self) -> Dict[str, Any]:
    """Custom claims set by the admin scripts (``app_metadata``)."""
    return self._data.get('app_metadata') or {}

  @property
  def is_admin(self) -> bool:
    return self.claims.get('admin') is True or self.claims.get('role') == 'admin'

  @property
  def is_teacher(self) -> bool:
    return self.claims.get('teacher') is True or self.claims.get('role') == 'teacher'

  @property
  def role(self) -> str:
    if self.is_admin:
      return 'admin'
    if self.is_teacher:
      return 'teacher'
    return 'student'

  def to_dict(self) -> Dict[str, Any]:
    return dict(self._data)


def _bearer_token(authorization: Optional[str]) -> str:
  if not authorization:
    raise HTTPException(status.HTTP_401_UNAUTHORIZED, 'Missing Authorization header')
  if not authorization.lower().startswith('bearer '):
    raise HTTPException(status.HTTP_401_UNAUTHORIZED, 'Invalid authorization scheme')
  token = authorization.split(' ', 1)[1].strip()
  if not token:
    raise HTTPException(status.HTTP_401_UNAUTHORIZED, 'Invalid bearer token')
  return token


async def verify_token(supabase: Client, token: str) -> AuthenticatedUser:
  """Validate an access token with Supabase Auth and return its user."""
  try:
    # the Supabase client is synchronous, run it off the event loop
    user_response = await asyncio.wait_for(
      asyncio.to_thread(supabase.auth.get_user, token),
      timeout=AUTH_TIMEOUT_SECONDS,
    )
  except asyncio.TimeoutError:
    logger.warning('[AUTH] get_user timed out')
    raise HTTPException(status.HTTP_408_REQUEST_TIMEOUT, 'Authentication request timed out. Please try again.')
  except (httpx.HTTPError, AuthRetryableError) as transport_error:
    logger.warning(f'[AUTH] Auth service unreachable ({type(transport_error).__name__}): {transport_error}')
    raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, 'Authentication service is unavailable. Please try again.')
  except AuthError as auth_error:
    logger.info(f'[AUTH] Token rejected ({type(auth_error).__name__}): {auth_error}')
    raise HTTPException(status.HTTP_401_UNAUTHORIZED, 'Invalid or expired token')

  user = getattr(user_response, 'user', None) if user_response else None
  if not user:
    raise HTTPException(status.HTTP_401_UNAUTHORIZED, 'Invalid or expired token')
  return AuthenticatedUser(user.model_dump())


async def get_current_user(
  supabase: SupabaseClientDep,
  request: Request,
  authorization: Annotated[str | None, Header(alias='Authorization')] = None,
) -> AuthenticatedUser:
  if not authorization:
    authorization = request.headers.get('authorization')
  return await verify_token(supabase, _bearer_token(authorization))


async def get_optional_user(
  request: Request,
  authorization: Annotated[str | None, Header(alias='Authorization')] = None,
) -> Optional[AuthenticatedUser]:
  authorization = authorization or request.headers.get('authorization')
  if not authorization:
    return None

  supabase = request.app.state.services.supabase
  if supabase is None:
    return None
  try:
    return await verify_token(supabase, _bearer_token(authorization))
  except HTTPException as e:
    # an unreachable auth service is an outage, not an anonymous request
    if e.status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
      raise
    return None


async def get_admin_user(
  user: Annotated[AuthenticatedUser, Depends(get_current_user)],
) -> AuthenticatedUser:
  """Admin-only endpoints: requires the ``admin`` claim."""
  if not user.is_admin:
    logger.info(f'[AUTH] User {user.id} without admin claim refused')
    raise HTTPException(status.HTTP_403_FORBIDDEN, 'Administrator access required')
  return user


CurrentUserDep = Annotated[AuthenticatedUser, Depends(get_current_user)]
OptionalUserDep = Annotated[Optional[AuthenticatedUser], Depends(get_optional_user)]
AdminUserDep = Annotated[AuthenticatedUser, Depends(get_admin_user)]


async def get_websocket_user(
  websocket: WebSocket,
  token: Annotated[str | None, Query()] = None,
) -> AuthenticatedUser:
  """Browsers cannot set headers on WebSocket upgrades, so the token comes as ``?token=``."""
  supabase = websocket.app.state.services.supabase
  if not token or supabase is None:
    raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason='Missing token')
  try:
    return await verify_token(supabase, token)
  except HTTPException as e:
    if e.status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
      raise WebSocketException(code=status.WS_1013_TRY_AGAIN_LATER, reason=str(e.detail))
    raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason=str(e.detail))


WebSocketUserDep = Annotated[AuthenticatedUser, Depends(get_websocket_user)]
