import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from tortoise.contrib.fastapi import RegisterTortoise

from apps.videos.exceptions import VideoServiceError
from apps.videos.manager import VideoManager
from apps.videos.routers import router as videos_router
from apps.videos.storage import pick_storage
from config.db import TORTOISE_ORM, check_db
from config.middleware import RequestLoggingMiddleware
from config.settings import APP_NAME, API_V1_STR, CORS_ORIGINS, LOG_LEVEL

logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with RegisterTortoise(app, config=TORTOISE_ORM, generate_schemas=True):
        storage = pick_storage()
        app.state.video_manager = VideoManager(storage)
        logger.info('%s started', APP_NAME)
        try:
            yield
        finally:
            await storage.aclose()
            logger.info('%s stopped', APP_NAME)


app = FastAPI(title=APP_NAME, version='1.0.0', lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS', 'PATCH'],
    allow_headers=['Accept', 'Authorization', 'Content-Type', 'X-CSRF-Token'],
    expose_headers=['Link'],
    max_age=300,
)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(VideoServiceError)
async def video_error_handler(request: Request, exc: VideoServiceError):
    return JSONResponse(status_code=exc.status_code, content={'detail': exc.message})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error('Unhandled exception on %s %s', request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={'detail': 'An internal server error occurred.'})


@app.get('/')
async def read_root():
    return {'message': APP_NAME, 'version': app.version}


@app.get('/health')
async def health_check():
    error = await check_db()
    if error:
        return JSONResponse(status_code=503, content={'status': 'unhealthy', 'error': error})
    return {'status': 'healthy'}


@app.get(f'{API_V1_STR}/status')
async def api_status():
    return {'status': 'API routes ready'}


app.include_router(videos_router)
