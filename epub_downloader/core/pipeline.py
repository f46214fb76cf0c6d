import os
import html
import shutil
import asyncio
import hashlib
from datetime import datetime, timezone
from bs4 import BeautifulSoup
from typing import List, Optional

from ..models import (
    log, ArticleData, ContentSpec, ConversionOptions, EpubOptions, Source,
    host_of_url, new_id, output_filename, parse_published
)
from .acquirer import MediaAcquirer
from .archiver import Archiver
from .document import EpubDocument
from .extractor import ArticleExtractor
from .filters import MediaSettings, prepare_dom_for_epub
from .renderer import Renderer
from .sanitizer import sanitize


def content_hash(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def site_name_for(article: ArticleData, url: str) -> str:
    site = article.site_name or host_of_url(url)
    if site.startswith("www."):
        site = site[4:]
    if site.endswith(".com"):
        site = site[:-4]
    return site


def author_for(article: ArticleData, site_name: str) -> str:
    author = (article.byline or "").strip()
    if author.lower().startswith("by "):
        author = author[3:].strip()
    return author or site_name


def resolve_output_path(options: ConversionOptions, title: str, published: datetime, site_name: str) -> str:
    if options.output:
        return options.output
    directory = options.path or "."
    if options.create_subfolders and site_name:
        directory = os.path.join(directory, site_name)
        os.makedirs(directory, exist_ok=True)
    return os.path.join(directory, output_filename(title, published))


def references_chapter(url: str, site_name: str, author: str, published: datetime, digest: str) -> ContentSpec:
    fetched = datetime.now(timezone.utc)
    data = (
        f"<p>Published on: <em>{published.strftime('%a, %d %b %Y %H:%M:%S GMT')}</em> by <em>{html.escape(author)}</em> "
        f"at <a href=\"{html.escape(url)}\">{html.escape(site_name)}</a>.</p>"
        f"<p>Fetched on: <em>{fetched.strftime('%a, %d %b %Y %H:%M:%S GMT')}</em>.</p>"
        f"<p>Content hash (SHA-256): <span class=\"content-hash\">{digest}</span></p>"
    )
    return ContentSpec(title="References", data=data)


class ConversionJob:
    """
    One article to EPUB conversion.

    Owns the build id and with it the temporary directories of this conversion,
    so a cancelled job can remove exactly what it created.
    """

    def __init__(self, source: Source, options: ConversionOptions, session):
        self.source = source
        self.options = options
        self.session = session
        self.build_id = new_id()
        self.temp_dir = os.path.abspath(options.temp_dir)
        self.build_dir = os.path.join(self.temp_dir, self.build_id)
        self.media_dir = os.path.join(self.temp_dir, f"{self.build_id}_media")

    def media_settings(self) -> MediaSettings:
        if not self.options.download_media:
            return MediaSettings()
        if self.options.epub_version == 2:
            # EPUB 2 has no audio/video elements to embed the files in.
            log.info("Media download skipped for EPUB 2 output")
            return MediaSettings()
        acquirer = MediaAcquirer(self.options.ytdlp_binary, strict_size_cap=self.options.strict_size_cap)
        return MediaSettings(acquirer=acquirer, work_dir=self.media_dir,
                             formats=self.options.media_formats, size_cap=self.options.media_filesize)

    async def prepare_content(self, article: ArticleData) -> str:
        soup = BeautifulSoup(article.html_content, 'html.parser')
        await prepare_dom_for_epub(soup, self.media_settings())
        return sanitize(soup.decode(formatter="minimal"), local_media_dir=self.media_dir)

    def build_options(self, article: ArticleData, content_html: str) -> EpubOptions:
        url = self.source.url
        site_name = site_name_for(article, url)
        author = author_for(article, site_name)
        published = parse_published(article.published_time)
        return EpubOptions(
            title=article.title,
            description=article.excerpt or "",
            author=author,
            publisher=site_name,
            lang=(article.language or "en")[:2],
            date=published.isoformat(),
            cover=self.options.cover,
            hide_toc=True,
            version=self.options.epub_version,
            verbose=self.options.verbose,
            temp_dir=self.temp_dir,
            local_media_dir=self.media_dir,
            content=[
                ContentSpec(title=article.title, data=content_html),
                references_chapter(url, site_name, author, published, content_hash(article.text_content)),
            ],
        )

    async def run(self) -> str:
        try:
            article = await ArticleExtractor.get_article(self.session, self.source)
            content_html = await self.prepare_content(article)
            epub_options = self.build_options(article, content_html)
            document = EpubDocument(epub_options, build_id=self.build_id)

            site_name = site_name_for(article, self.source.url)
            output = resolve_output_path(self.options, document.title, parse_published(article.published_time), site_name)

            build_dir = await Renderer(self.session).render(document)
            Archiver(repair=self.options.repair_archive).archive(build_dir, output)
        except (asyncio.CancelledError, KeyboardInterrupt):
            log.warning("Conversion interrupted, removing temporary files...")
            self.cleanup()
            raise
        shutil.rmtree(self.media_dir, ignore_errors=True)
        log.info(f"Wrote EPUB: {output}")
        return output

    def cleanup(self) -> None:
        for directory in (self.build_dir, self.media_dir):
            shutil.rmtree(directory, ignore_errors=True)


async def convert(source: Source, options: ConversionOptions, session) -> str:
    return await ConversionJob(source, options, session).run()


async def convert_many(sources: List[Source], options: ConversionOptions, session) -> List[Optional[str]]:
    """Convert sources one after another; a failed source yields None."""
    results = []
    for source in sources:
        try:
            results.append(await convert(source, options, session))
        except Exception as e:
            log.exception(f"Failed to process {source.url}: {e}")
            results.append(None)
    return results
