import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import engine, Base
from routes.callbacks import router as callbacks_router
from routes.health import router as health_router
from routes.jobs import router as jobs_router
from routes.stages import router as stages_router
from routes.storage import router as storage_router
from services.errors import ConfigurationError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Documette API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Missing or mistyped fields are plain bad input.
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Server configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"Server configuration error: {exc}"})


app.include_router(health_router)
app.include_router(jobs_router)
app.include_router(storage_router)
app.include_router(stages_router)
app.include_router(callbacks_router)
