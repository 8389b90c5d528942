import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .dependencies import PortalServices, build_services
from .errors import PortalError, log_portal_error
from .logging_config import configure_logging
from .routers import announcements

logger = logging.getLogger(__name__)


def _cors_headers(request: Request) -> dict:
  return {
    'Access-Control-Allow-Origin': request.headers.get('origin', '*'),
    'Access-Control-Allow-Credentials': 'true',
  }


def create_app(settings: Optional[Settings] = None, services: Optional[PortalServices] = None) -> FastAPI:
  settings = settings or get_settings()
  configure_logging(settings.log_level)

  @asynccontextmanager
  async def lifespan(app: FastAPI):
    app.state.services = services or build_services(settings)
    logger.info(f'[STARTUP] Announcement store backend: {settings.store_backend}')
    try:
      yield
    finally:
      await app.state.services.close()
      logger.info('[SHUTDOWN] Live subscriptions closed')

  app = FastAPI(
    title='Campus Portal Announcements API',
    version='1.0.0',
    description='Announcements, live notifications and read tracking for the campus portal.',
    lifespan=lifespan,
  )
  app.state.settings = settings
  # injected services are usable before the lifespan runs
  if services is not None:
    app.state.services = services

  app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
  )

  @app.exception_handler(StarletteHTTPException)
  async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
      status_code=exc.status_code,
      content={'detail': exc.detail},
      headers=_cors_headers(request),
    )

  @app.exception_handler(RequestValidationError)
  async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
      field = ' -> '.join(str(loc) for loc in error['loc'])
      errors.append({
        'field': field,
        'message': error['msg'],
        'type': error['type'],
      })
    logger.info(f'[VALIDATION_ERROR] {request.method} {request.url.path}: {errors}')

    return JSONResponse(
      status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
      content={
        'detail': errors,
        'message': 'Validation error. Please check your input data.',
      },
      headers=_cors_headers(request),
    )

  @app.exception_handler(PortalError)
  async def portal_error_handler(request: Request, exc: PortalError):
    log_portal_error(exc, request.url.path)
    return JSONResponse(
      status_code=exc.status_code,
      content={'detail': exc.user_message, 'code': exc.code},
      headers=_cors_headers(request),
    )

  @app.exception_handler(Exception)
  async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f'[UNHANDLED] {request.method} {request.url.path}: {type(exc).__name__}: {exc}')
    return JSONResponse(
      status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
      content={'detail': 'Internal server error'},
      headers=_cors_headers(request),
    )

  app.include_router(announcements.router)

  @app.get('/healthz', tags=['system'])
  async def healthcheck(request: Request):
    services: PortalServices = request.app.state.services
    return {
      'status': 'ok',
      'store_backend': settings.store_backend,
      'live_subscriptions': services.hub.subscription_count,
    }

  return app
