import os
import re
import mimetypes
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..models import log, EpubOptions, ContentItem, MediaAsset, new_id, slug
from ..errors import FatalBuildError
from .registry import MediaRegistry, resolve_media_type
from .transformer import ContentTransformer

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "templates")
SUPPORTED_VERSIONS = (2, 3)
XHTML_SUFFIX = ".xhtml"


def default_template(version: int, name: str) -> str:
    return os.path.join(TEMPLATES_DIR, f"epub{version}", name)


def _require_template(path: str, what: str) -> str:
    if not os.path.exists(path):
        raise FatalBuildError(f"Could not resolve path to {what} template: {path}")
    return path


def _as_list(author) -> List[str]:
    if not author:
        return []
    if isinstance(author, str):
        return [author]
    return [a for a in author if a]


def order_content(items: List[ContentItem]) -> List[ContentItem]:
    """Cover first, then before-ToC items, then the rest, each group in insertion order."""
    def bucket(item: ContentItem) -> int:
        if item.is_cover:
            return 0
        if item.before_toc:
            return 1
        return 2
    return sorted(items, key=bucket)


class EpubDocument:
    """
    In-memory book built from EpubOptions.

    Construction validates the options, registers the cover page and transforms
    every chapter, so all media references are known before anything is written
    to disk. The document owns its MediaRegistry.
    """

    def __init__(self, options: EpubOptions, build_id: Optional[str] = None):
        if not options.title:
            raise FatalBuildError("Could not find any title")
        if options.version not in SUPPORTED_VERSIONS:
            raise FatalBuildError(f"Unsupported EPUB version: {options.version}")

        self.id = build_id or new_id()
        self.title: str = options.title
        self.description = options.description or ""
        self.publisher = options.publisher or "anonymous"
        self.authors = _as_list(options.author) or ["anonymous"]
        self.toc_title = options.toc_title
        self.append_chapter_titles = options.append_chapter_titles
        self.show_toc = not options.hide_toc
        self.date = options.date or datetime.now(timezone.utc).isoformat()
        self.lang = (options.lang or "en")[:2].lower()
        self.css = options.css
        self.version = options.version
        self.user_agent = options.user_agent
        self.verbose = options.verbose
        self.temp_dir = os.path.abspath(options.temp_dir)
        self.build_dir = os.path.join(self.temp_dir, self.id)
        self.local_media_dir = os.path.abspath(options.local_media_dir) if options.local_media_dir else None

        self.opf_template = _require_template(
            options.custom_opf_template_path or default_template(self.version, "content.opf.j2"), "OPF")
        self.html_toc_template = _require_template(
            options.custom_html_toc_template_path or default_template(self.version, "toc.xhtml.j2"), "HTML toc")
        self.ncx_toc_template = None
        if self.version == 2:
            self.ncx_toc_template = _require_template(
                options.custom_ncx_toc_template_path or default_template(2, "toc.ncx.j2"), "NCX toc")
        self.content_template = _require_template(os.path.join(TEMPLATES_DIR, "content.xhtml.j2"), "content")

        self.cover = options.cover or None
        self.first_image_is_cover = bool(options.first_image_is_cover and not self.cover)
        self.cover_media_type: Optional[str] = None
        self.cover_extension: Optional[str] = None
        self.cover_dimensions: Dict[str, int] = {"width": 0, "height": 0}
        if self.cover:
            resolved = resolve_media_type(self.cover)
            if not resolved:
                raise FatalBuildError(f"The cover image can't be processed: {self.cover}")
            self.cover_media_type, self.cover_extension = resolved

        self.fonts = self._check_fonts(options.fonts)

        self.registry = MediaRegistry(self.version)
        transformer = ContentTransformer(
            self.registry, self.version,
            allowed_attributes=options.allowed_attributes,
            allowed_xhtml11_tags=options.allowed_xhtml11_tags,
            verbose=self.verbose,
        )

        items: List[ContentItem] = []
        if self.cover:
            template = _require_template(
                options.custom_html_cover_template_path or default_template(self.version, "cover.xhtml.j2"),
                "cover")
            items.append(ContentItem(
                id=f"item_{len(items)}", href="cover.xhtml", title="cover", raw_data="",
                template_path=template, is_cover=True, exclude_from_toc=True, before_toc=True,
            ))

        offset = len(items)
        for i, spec in enumerate(options.content):
            index = offset + i
            item = ContentItem(
                id=f"item_{index}",
                href=self._href_for(index, spec.title, spec.filename),
                title=spec.title or "no title",
                raw_data=spec.data or "",
                source_url=spec.url,
                authors=_as_list(spec.author),
                template_path=self.content_template,
                exclude_from_toc=spec.exclude_from_toc,
                before_toc=spec.before_toc,
            )
            transformer.transform(item)
            items.append(item)

        seen = set()
        for item in items:
            if item.href in seen:
                raise FatalBuildError(f"Duplicate content file name: {item.href}")
            seen.add(item.href)

        self.content_items = order_content(items)
        log.debug(f"Document {self.id}: {len(self.content_items)} items, "
                  f"{len(self.registry.images)} images, {len(self.registry.audio_video)} audio/video")

    @staticmethod
    def _href_for(index: int, title: Optional[str], filename: Optional[str]) -> str:
        if filename is None:
            prepend = f"{index}_"
            return f"{prepend}{slug(title or 'no title', len(prepend) + 6)}{XHTML_SUFFIX}"
        if filename.endswith(XHTML_SUFFIX):
            return filename
        stem = re.sub(r'\.x?html?$', '', filename)
        return f"{stem}{XHTML_SUFFIX}"

    @staticmethod
    def _check_fonts(fonts: List[str]) -> List[Dict[str, str]]:
        checked = []
        for font in fonts or []:
            if not os.path.exists(font):
                raise FatalBuildError(f"Custom font not found at {font}.")
            media_type = mimetypes.guess_type(font)[0] or "application/octet-stream"
            checked.append({"path": font, "filename": os.path.basename(font), "media_type": media_type})
        return checked

    @property
    def images(self) -> List[MediaAsset]:
        return self.registry.images

    @property
    def audio_video(self) -> List[MediaAsset]:
        return self.registry.audio_video

    @property
    def cover_image(self) -> Optional[MediaAsset]:
        """First stored content image when it doubles as the cover."""
        if not self.first_image_is_cover:
            return None
        for asset in self.registry.images:
            if asset.stored:
                return asset
        return None

    @property
    def doc_header(self) -> str:
        if self.version == 2:
            return (
                '<?xml version="1.0" encoding="UTF-8"?>\n'
                '<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.1//EN" "http://www.w3.org/TR/xhtml11/DTD/xhtml11.dtd">\n'
                f'<html xmlns="http://www.w3.org/1999/xhtml" xml:lang="{self.lang}">\n'
            )
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<!DOCTYPE html>\n'
            f'<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" lang="{self.lang}" xml:lang="{self.lang}">\n'
        )
