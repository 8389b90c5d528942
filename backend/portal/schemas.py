from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ValidationError

TITLE_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 500


class Category(str, Enum):
  GENERAL = 'general'
  URGENT = 'urgent'
  EVENT = 'event'
  ACADEMIC = 'academic'


def clean_title(value: Any) -> str:
  if not isinstance(value, str) or not value.strip():
    raise ValidationError('Title cannot be empty', field='title')
  # the limit applies to the text as submitted, before trimming
  if len(value) > TITLE_MAX_LENGTH:
    raise ValidationError(f'Title must be at most {TITLE_MAX_LENGTH} characters long', field='title')
  return value.strip()


def clean_message(value: Any) -> str:
  if not isinstance(value, str) or not value.strip():
    raise ValidationError('Message cannot be empty', field='message')
  if len(value) > MESSAGE_MAX_LENGTH:
    raise ValidationError(f'Message must be at most {MESSAGE_MAX_LENGTH} characters long', field='message')
  return value.strip()


def clean_category(value: Any) -> Category:
  if value is None:
    return Category.GENERAL
  try:
    return Category(value)
  except ValueError:
    allowed = ', '.join(c.value for c in Category)
    raise ValidationError(f'Category must be one of: {allowed}', field='category')


class Announcement(BaseModel):
  """One announcement record as stored; snapshots hold these."""

  model_config = ConfigDict(frozen=True, use_enum_values=False)

  id: str
  title: str
  message: str
  category: Category = Category.GENERAL
  active: bool = True
  created_at: Optional[datetime] = None  # None until the store has assigned it
  read_by: List[str] = Field(default_factory=list)

  @field_validator('read_by', mode='before')
  @classmethod
  def dedupe_readers(cls, v):
    if v is None:
      return []
    # keep first-seen order, drop repeats
    return list(dict.fromkeys(v))

  @field_validator('category', mode='before')
  @classmethod
  def default_category(cls, v):
    return v or Category.GENERAL


class AnnouncementCreate(BaseModel):
  title: str
  message: str
  category: Category = Category.GENERAL

  @field_validator('title', mode='before')
  @classmethod
  def validate_title(cls, v):
    return clean_title(v)

  @field_validator('message', mode='before')
  @classmethod
  def validate_message(cls, v):
    return clean_message(v)


class AnnouncementUpdate(BaseModel):
  title: Optional[str] = None
  message: Optional[str] = None
  category: Optional[Category] = None
  active: Optional[bool] = None

  @field_validator('title', mode='before')
  @classmethod
  def validate_title(cls, v):
    return None if v is None else clean_title(v)

  @field_validator('message', mode='before')
  @classmethod
  def validate_message(cls, v):
    return None if v is None else clean_message(v)

  @model_validator(mode='after')
  def require_one_field(self):
    if not self.fields():
      raise ValueError('No fields to update')
    return self

  def fields(self) -> Dict[str, Any]:
    return self.model_dump(exclude_none=True)


class NotificationItem(BaseModel):
  announcement: Announcement
  is_read: bool
  formatted_date: str = ''


class NotificationFeedResponse(BaseModel):
  tab: str
  unread_count: int
  items: List[NotificationItem]


class UnreadCountResponse(BaseModel):
  unread_count: int


class Reader(BaseModel):
  id: str
  name: str
  email: str = ''
  dept: str = ''


class ReadersResponse(BaseModel):
  announcement_id: str
  total: int
  readers: List[Reader]


class AnnouncementStats(BaseModel):
  total: int
  active: int
  inactive: int
  by_category: Dict[str, int]


class LiveSnapshotMessage(BaseModel):
  type: str = 'snapshot'
  degraded: bool = False
  unread_count: int
  items: List[NotificationItem]
