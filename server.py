import os
import shutil
import uvicorn
import tempfile
from typing import Optional
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.background import BackgroundTask

from epub_downloader.models import log, EPUB_MIMETYPE, Source, split_formats
from epub_downloader.errors import EpubDownloaderError
from epub_downloader.core.config import ConfigManager
from epub_downloader.core import pipeline
from epub_downloader.core.session import get_session

app = FastAPI()

@app.middleware("http")
async def log_requests(request, call_next):
    log.info(f"Incoming request: {request.method} {request.url}")
    return await call_next(request)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)

class ConversionRequest(BaseModel):
    url: str
    html: Optional[str] = None
    cover: Optional[str] = None
    download_media: bool = False
    media_format: Optional[str] = None
    media_filesize: Optional[float] = None
    epub_version: int = 3

@app.get("/ping")
async def ping(): return {"status": "ok"}

@app.post("/convert")
async def convert(req: ConversionRequest):
    if req.epub_version not in (2, 3):
        raise HTTPException(status_code=422, detail="epub_version must be 2 or 3")
    # Local paths are a CLI feature; a remote client could read server files with them.
    if req.cover and not req.cover.lower().startswith(("http://", "https://")):
        raise HTTPException(status_code=422, detail="cover must be an http(s) URL")

    out_dir = tempfile.mkdtemp(prefix="epub_downloader_")
    options = ConfigManager.get_instance().options(
        path=out_dir,
        cover=req.cover,
        download_media=req.download_media,
        media_formats=split_formats(req.media_format),
        media_filesize=req.media_filesize,
        epub_version=req.epub_version,
    )

    try:
        async with get_session() as session:
            output = await pipeline.convert(Source(url=req.url, html=req.html), options, session)
    except EpubDownloaderError as e:
        log.error(f"Conversion failed for {req.url}: {e}")
        shutil.rmtree(out_dir, ignore_errors=True)
        raise HTTPException(status_code=500, detail=str(e))

    filename = os.path.basename(output)
    log.info(f"Sending: {filename}")
    return FileResponse(path=output, filename=filename, media_type=EPUB_MIMETYPE,
                        background=BackgroundTask(_remove_output, output, out_dir))

def _remove_output(path: str, directory: str):
    if os.path.exists(path):
        os.remove(path)
    if os.path.isdir(directory) and not os.listdir(directory):
        os.rmdir(directory)

if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
