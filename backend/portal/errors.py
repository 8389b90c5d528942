"""
Error taxonomy for announcement operations.

Stores raise these; routers translate them into short user-facing messages
with ``to_http_exception`` and log the diagnostic.

    try:
      await store.mark_read(announcement_id, user.id)
    except PortalError as exc:
      raise to_http_exception(exc, 'mark_read', announcement_id)
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class PortalError(Exception):
  """Base exception for announcement store and live query failures"""

  status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
  user_message = 'Something went wrong. Please try again.'

  def __init__(
    self,
    message: str,
    code: str = 'INTERNAL_ERROR',
    details: Optional[Dict[str, Any]] = None,
  ):
    self.message = message
    self.code = code
    self.details = details or {}
    super().__init__(self.message)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'code': self.code,
      'message': self.message,
      'details': self.details,
    }


class ValidationError(PortalError, ValueError):
  """Malformed input; the store is never called"""

  status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

  def __init__(self, message: str, field: Optional[str] = None):
    super().__init__(message, code='VALIDATION_ERROR', details={'field': field} if field else None)
    self.field = field
    # validation messages are written for end users
    self.user_message = message


class NotFoundError(PortalError):
  """The referenced announcement no longer exists"""

  status_code = status.HTTP_404_NOT_FOUND
  user_message = 'This announcement no longer exists. Refresh to see the latest list.'

  def __init__(self, announcement_id: str):
    super().__init__(
      f'Announcement {announcement_id} not found',
      code='NOT_FOUND',
      details={'announcement_id': announcement_id},
    )
    self.announcement_id = announcement_id


class TransientStoreError(PortalError):
  """Network or availability failure from the backing store"""

  status_code = status.HTTP_503_SERVICE_UNAVAILABLE
  user_message = 'The announcement service is temporarily unavailable. Please try again.'

  def __init__(self, message: str, code: str = 'STORE_UNAVAILABLE', details: Optional[Dict[str, Any]] = None):
    super().__init__(message, code=code, details=details)


class UnsupportedQueryShape(TransientStoreError):
  """The store cannot serve a filtered + ordered query (e.g. missing composite index)"""

  def __init__(self, message: str, index_hint: Optional[str] = None):
    super().__init__(message, code='UNSUPPORTED_QUERY_SHAPE', details={'index_hint': index_hint} if index_hint else None)
    self.index_hint = index_hint


class PermissionDenied(PortalError, PermissionError):
  """The identity lacks rights for the attempted mutation"""

  status_code = status.HTTP_403_FORBIDDEN
  user_message = 'You do not have permission to perform this action.'

  def __init__(self, message: str = 'Permission denied'):
    super().__init__(message, code='PERMISSION_DENIED')


def log_portal_error(exc: PortalError, operation: str, announcement_id: Optional[str] = None) -> None:
  context = f'operation={operation} id={announcement_id or "-"} kind={type(exc).__name__}'
  if isinstance(exc, (ValidationError, NotFoundError)):
    logger.info(f'[{operation.upper()}] {context}: {exc.message}')
  else:
    logger.error(f'[{operation.upper()}] {context}: {exc.message}')


def to_http_exception(
  exc: PortalError,
  operation: str,
  announcement_id: Optional[str] = None,
) -> HTTPException:
  """Log ``exc`` with its context and return the HTTPException shown to the client."""
  log_portal_error(exc, operation, announcement_id)
  return HTTPException(exc.status_code, exc.user_message)
