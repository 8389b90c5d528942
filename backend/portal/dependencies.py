from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.requests import HTTPConnection
from supabase import Client, create_client

from .config import Settings
from .directory import StaticUserDirectory, SupabaseUserDirectory, UserDirectory
from .live import LiveQueryHub
from .read_state import ReadStateTracker
from .stores.base import AnnouncementStore
from .stores.memory import MemoryAnnouncementStore
from .stores.supabase_store import SupabaseAnnouncementStore


@dataclass
class PortalServices:
  store: AnnouncementStore
  hub: LiveQueryHub
  tracker: ReadStateTracker
  directory: UserDirectory
  supabase: Optional[Client] = None

  async def close(self) -> None:
    await self.hub.close()
    await self.store.close()


def build_services(settings: Settings) -> PortalServices:
  supabase = None
  if settings.supabase_url and settings.supabase_service_key:
    supabase = create_client(settings.supabase_url, settings.supabase_service_key)

  if settings.store_backend == 'memory':
    store: AnnouncementStore = MemoryAnnouncementStore()
    directory: UserDirectory = StaticUserDirectory()
  else:
    store = SupabaseAnnouncementStore(
      supabase,
      table=settings.announcements_table,
      timeout=settings.store_timeout_seconds,
    )
    directory = SupabaseUserDirectory(
      supabase,
      table=settings.profiles_table,
      timeout=settings.store_timeout_seconds,
    )

  hub = LiveQueryHub(
    store,
    default_max_results=settings.live_max_results,
    refresh_interval=settings.live_refresh_seconds,
  )
  return PortalServices(
    store=store,
    hub=hub,
    tracker=ReadStateTracker(store),
    directory=directory,
    supabase=supabase,
  )


def get_services(connection: HTTPConnection) -> PortalServices:
  return connection.app.state.services


def get_app_settings(connection: HTTPConnection) -> Settings:
  """The settings this app was created with."""
  return connection.app.state.settings


def get_supabase_client(services: Annotated[PortalServices, Depends(get_services)]) -> Client:
  if services.supabase is None:
    raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, 'Authentication provider is not configured')
  return services.supabase


def get_store(services: Annotated[PortalServices, Depends(get_services)]) -> AnnouncementStore:
  return services.store


def get_hub(services: Annotated[PortalServices, Depends(get_services)]) -> LiveQueryHub:
  return services.hub


def get_tracker(services: Annotated[PortalServices, Depends(get_services)]) -> ReadStateTracker:
  return services.tracker


def get_directory(services: Annotated[PortalServices, Depends(get_services)]) -> UserDirectory:
  return services.directory


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
SupabaseClientDep = Annotated[Client, Depends(get_supabase_client)]
StoreDep = Annotated[AnnouncementStore, Depends(get_store)]
HubDep = Annotated[LiveQueryHub, Depends(get_hub)]
TrackerDep = Annotated[ReadStateTracker, Depends(get_tracker)]
DirectoryDep = Annotated[UserDirectory, Depends(get_directory)]
