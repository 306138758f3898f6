from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
import os

from .diag_api import _mgr
from .diag_api import router as diag_router


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    # release the adapter link when the server stops
    await _mgr.shutdown()


app = FastAPI(title='elmlink diagnostics', lifespan=lifespan)

app.include_router(diag_router)


# simple health endpoint
@app.get('/api/health')
def health():
    return {'status': 'ok'}


# mount static UI at root if present
static_dir = os.path.join(os.path.dirname(__file__), 'static')
if os.path.isdir(static_dir):
    app.mount('/', StaticFiles(directory=static_dir, html=True), name='static')
