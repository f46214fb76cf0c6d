import os
import shutil
from datetime import datetime, timezone
from functools import lru_cache
from typing import Dict, List

from jinja2 import Environment, FileSystemLoader
from PIL import Image as PillowImage, UnidentifiedImageError
from tqdm import tqdm

from ..models import log, MediaAsset, IMAGE_DIR_IN_EPUB, AUDIOVIDEO_DIR_IN_EPUB
from ..errors import AssetAcquisitionError, FatalBuildError
from .document import EpubDocument, TEMPLATES_DIR
from .session import download_to_file

CONTAINER_XML = (
    '<?xml version="1.0" encoding="UTF-8" ?>'
    '<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">'
    '<rootfiles><rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/></rootfiles>'
    '</container>'
)
IBOOKS_DISPLAY_OPTIONS = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<display_options>
<platform name="*">
<option name="specified-fonts">true</option>
</platform>
</display_options>
"""


@lru_cache(maxsize=None)
def _template_env(directory: str) -> Environment:
    return Environment(
        loader=FileSystemLoader(directory),
        autoescape=True,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_template(path: str, **context) -> str:
    if not os.path.exists(path):
        raise FatalBuildError(f"Template not found: {path}")
    directory, name = os.path.split(os.path.abspath(path))
    return _template_env(directory).get_template(name).render(**context)


def probe_dimensions(path: str) -> Dict[str, int]:
    try:
        with PillowImage.open(path) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError) as e:
        raise FatalBuildError(f"Failed to retrieve cover image dimensions for \"{path}\": {e}") from e
    if not width or not height or width <= 0 or height <= 0:
        raise FatalBuildError(f"Failed to retrieve cover image dimensions for \"{path}\"")
    return {"width": width, "height": height}


class Renderer:
    """Writes an EpubDocument out as an unpacked EPUB directory tree."""

    def __init__(self, session):
        self.session = session

    async def render(self, document: EpubDocument) -> str:
        build_dir = document.build_dir
        oebps = os.path.join(build_dir, "OEBPS")
        os.makedirs(document.temp_dir, exist_ok=True)
        os.makedirs(oebps)

        log.info("Downloading Media...")
        await self.download_all_media(document, oebps)
        log.info("Making Cover...")
        await self.make_cover(document, oebps)
        log.info("Generating Template Files...")
        self.generate_files(document, build_dir)
        return build_dir

    async def download_all_media(self, document: EpubDocument, oebps: str) -> None:
        for assets, subfolder in ((document.images, IMAGE_DIR_IN_EPUB),
                                  (document.audio_video, AUDIOVIDEO_DIR_IN_EPUB)):
            if not assets:
                continue
            os.makedirs(os.path.join(oebps, subfolder), exist_ok=True)
            for asset in tqdm(assets, desc=f"Fetching {subfolder}", disable=not document.verbose):
                await self.download_media(document, asset, oebps)

    async def download_media(self, document: EpubDocument, asset: MediaAsset, oebps: str) -> None:
        destination = os.path.join(oebps, asset.href)
        try:
            await download_to_file(self.session, asset.locator, destination,
                                   user_agent=document.user_agent, move_from=document.local_media_dir)
            asset.stored = True
        except (AssetAcquisitionError, OSError) as e:
            log.warning(f"The media can't be processed: {asset.locator}, {e}")

    async def make_cover(self, document: EpubDocument, oebps: str) -> None:
        if not document.cover:
            return
        destination = os.path.join(oebps, f"cover.{document.cover_extension}")
        try:
            await download_to_file(self.session, document.cover, destination, user_agent=document.user_agent,
                                   allow_local=True)
        except (AssetAcquisitionError, OSError) as e:
            raise FatalBuildError(f"The cover image can't be processed: {document.cover}, {e}") from e
        document.cover_dimensions = probe_dimensions(destination)
        log.info(f"Cover image dimensions: {document.cover_dimensions['width']} x {document.cover_dimensions['height']}")

    def generate_files(self, document: EpubDocument, build_dir: str) -> None:
        oebps = os.path.join(build_dir, "OEBPS")
        context = self.template_context(document)

        css = document.css
        if not css:
            with open(os.path.join(TEMPLATES_DIR, "template.css"), encoding="utf-8") as f:
                css = f.read()
        self._write(os.path.join(oebps, "style.css"), css)

        if document.fonts:
            os.makedirs(os.path.join(oebps, "fonts"))
            for font in document.fonts:
                shutil.copyfile(font["path"], os.path.join(oebps, "fonts", font["filename"]))

        for item in document.content_items:
            html = render_template(item.template_path, item=item, **context)
            self._write(os.path.join(oebps, item.href), html)

        meta_inf = os.path.join(build_dir, "META-INF")
        os.makedirs(meta_inf)
        self._write(os.path.join(meta_inf, "container.xml"), CONTAINER_XML)
        if document.version == 2:
            self._write(os.path.join(meta_inf, "com.apple.ibooks.display-options.xml"), IBOOKS_DISPLAY_OPTIONS)

        self._write(os.path.join(oebps, "content.opf"), render_template(document.opf_template, **context))
        if document.ncx_toc_template:
            self._write(os.path.join(oebps, "toc.ncx"), render_template(document.ncx_toc_template, **context))
        self._write(os.path.join(oebps, "toc.xhtml"), render_template(document.html_toc_template, **context))

    @staticmethod
    def template_context(document: EpubDocument) -> dict:
        before = [i for i in document.content_items if i.before_toc]
        after = [i for i in document.content_items if not i.before_toc]
        nav_entries: List[dict] = [
            {"id": i.id, "title": i.title, "href": i.href}
            for i in before if not i.exclude_from_toc
        ]
        if document.show_toc:
            nav_entries.append({"id": "toc", "title": document.toc_title, "href": "toc.xhtml"})
        nav_entries.extend(
            {"id": i.id, "title": i.title, "href": i.href}
            for i in after if not i.exclude_from_toc
        )
        return {
            "doc": document,
            "id": document.id,
            "title": document.title,
            "description": document.description,
            "publisher": document.publisher,
            "authors": document.authors,
            "lang": document.lang,
            "date": document.date,
            "modified": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "version": document.version,
            "doc_header": document.doc_header,
            "toc_title": document.toc_title,
            "show_toc": document.show_toc,
            "append_chapter_titles": document.append_chapter_titles,
            "content_items": document.content_items,
            "before_toc_items": before,
            "after_toc_items": after,
            "toc_items": [i for i in document.content_items if not i.exclude_from_toc],
            "nav_entries": nav_entries,
            "images": [a for a in document.images if a.stored],
            "audio_video": [a for a in document.audio_video if a.stored],
            "cover": document.cover,
            "cover_extension": document.cover_extension,
            "cover_media_type": document.cover_media_type,
            "cover_dimensions": document.cover_dimensions,
            "cover_image": document.cover_image,
            "fonts": document.fonts,
        }

    @staticmethod
    def _write(path: str, text: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
