from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import router
from api.state import get_core
from utils.logging_setup import configure_logging
from utils.settings import APP_VERSION


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if get_core.cache_info().currsize:
        get_core().shutdown()


configure_logging()

app = FastAPI(
    title="Query Core API",
    version=APP_VERSION,
    description="Connection registry, query execution, result streaming and schema introspection",
    lifespan=lifespan,
)
app.include_router(router)
