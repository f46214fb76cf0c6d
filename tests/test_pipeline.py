import io
import asyncio
import os
import zipfile
import pytest
import aiohttp
from aioresponses import aioresponses
from ebooklib import epub
from PIL import Image

from epub_downloader.models import ContentSpec, ConversionOptions, EpubOptions, Source
from epub_downloader.errors import FatalBuildError
from epub_downloader.core.archiver import Archiver
from epub_downloader.core.document import EpubDocument
from epub_downloader.core.pipeline import ConversionJob, convert
from epub_downloader.core.renderer import Renderer

PARAGRAPH = "This paragraph is long enough to be picked up as the main article content by the extractor. "

ARTICLE_HTML = f"""<html lang="en"><head>
<title>Example Article</title>
<meta property="og:title" content="Example Article">
<meta property="og:site_name" content="Example">
</head><body>
<nav><a href="/">Home</a></nav>
<article>
<p>{PARAGRAPH * 3}</p>
<img src="https://example.com/y.png" alt="A picture">
<p>{PARAGRAPH * 2}</p>
</article>
</body></html>"""

UNTITLED_HTML = f"""<html><head></head><body>
<article><p>{PARAGRAPH * 4}</p></article>
</body></html>"""


def _png_bytes(size=(4, 3)):
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.mark.asyncio
async def test_convert_article_with_image(tmp_path):
    url = "https://example.com/article"
    output = tmp_path / "out.epub"
    temp_dir = tmp_path / "build"
    options = ConversionOptions(output=str(output), temp_dir=str(temp_dir))

    with aioresponses() as m:
        m.get(url, status=200, body=ARTICLE_HTML, content_type="text/html")
        m.get("https://example.com/y.png", status=200, body=_png_bytes(), content_type="image/png")

        async with aiohttp.ClientSession() as session:
            result = await convert(Source(url=url), options, session)

    assert result == str(output)
    with zipfile.ZipFile(output) as zf:
        names = zf.namelist()
        assert names[0] == "mimetype"
        images = [n for n in names if n.startswith("OEBPS/images/")]
        assert len(images) == 1 and images[0].endswith(".png")
        image_href = images[0][len("OEBPS/"):]

        chapters = [n for n in names if n.endswith(".xhtml") and n not in ("OEBPS/toc.xhtml",)]
        bodies = "".join(zf.read(n).decode("utf-8") for n in chapters)
        assert f'src="{image_href}"' in bodies
        assert "https://example.com/y.png" not in bodies
        assert "References" in bodies
        assert "Content hash (SHA-256)" in bodies

        opf = zf.read("OEBPS/content.opf").decode("utf-8")
        assert "<dc:title>Example Article</dc:title>" in opf
        assert image_href in opf

    # Build and media directories are gone.
    assert os.listdir(temp_dir) == []


@pytest.mark.asyncio
async def test_missing_title_writes_nothing(tmp_path):
    url = "https://example.com/untitled"
    output = tmp_path / "out.epub"
    temp_dir = tmp_path / "build"
    options = ConversionOptions(output=str(output), temp_dir=str(temp_dir))

    with aioresponses() as m:
        m.get(url, status=200, body=UNTITLED_HTML, content_type="text/html")

        async with aiohttp.ClientSession() as session:
            with pytest.raises(FatalBuildError):
                await convert(Source(url=url), options, session)

    assert not output.exists()
    assert not temp_dir.exists() or os.listdir(temp_dir) == []


@pytest.mark.asyncio
async def test_prefetched_html_is_not_fetched(tmp_path):
    url = "https://example.com/article"
    output = tmp_path / "out.epub"
    options = ConversionOptions(output=str(output), temp_dir=str(tmp_path / "build"))

    with aioresponses() as m:
        m.get("https://example.com/y.png", status=404)

        async with aiohttp.ClientSession() as session:
            await convert(Source(url=url, html=ARTICLE_HTML), options, session)

    with zipfile.ZipFile(output) as zf:
        # The image failed, so it is left out of the book.
        assert not [n for n in zf.namelist() if n.startswith("OEBPS/images/")]


@pytest.mark.asyncio
async def test_render_epub3_with_cover(tmp_path):
    cover = tmp_path / "cover.png"
    cover.write_bytes(_png_bytes((30, 40)))
    document = EpubDocument(EpubOptions(
        title="Local Book", author=["Ann", "Bob"], cover=str(cover), temp_dir=str(tmp_path / "build"),
        content=[ContentSpec(title="One", data="<p>First</p>"), ContentSpec(title="Two", data="<p>Second</p>")],
    ))

    build_dir = await Renderer(session=None).render(document)
    assert document.cover_dimensions == {"width": 30, "height": 40}
    assert os.path.exists(os.path.join(build_dir, "OEBPS", "cover.png"))
    with open(os.path.join(build_dir, "OEBPS", "cover.xhtml"), encoding="utf-8") as f:
        assert 'viewBox="0 0 30 40"' in f.read()

    output = tmp_path / "local.epub"
    Archiver().archive(build_dir, str(output))

    book = epub.read_epub(str(output), options={"ignore_ncx": True})
    assert book.get_metadata("DC", "title")[0][0] == "Local Book"
    assert [c[0] for c in book.get_metadata("DC", "creator")] == ["Ann", "Bob"]
    assert book.get_item_with_href("0_one.xhtml") is None
    assert book.get_item_with_href("1_one.xhtml") is not None


@pytest.mark.asyncio
async def test_render_epub2_layout(tmp_path):
    document = EpubDocument(EpubOptions(
        title="Old Book", version=2, temp_dir=str(tmp_path / "build"),
        content=[ContentSpec(title="Chapter", data="<section><p>Text</p></section>")],
    ))

    build_dir = await Renderer(session=None).render(document)

    assert os.path.exists(os.path.join(build_dir, "OEBPS", "toc.ncx"))
    assert os.path.exists(os.path.join(build_dir, "META-INF", "com.apple.ibooks.display-options.xml"))
    with open(os.path.join(build_dir, "OEBPS", "0_chapter.xhtml"), encoding="utf-8") as f:
        chapter = f.read()
    assert "XHTML 1.1" in chapter
    assert "<section" not in chapter


def _page(body):
    return f"""<html lang="en"><head><title>Example Article</title></head><body>
<article>
<p>{PARAGRAPH * 3}</p>
{body}
<p>{PARAGRAPH * 2}</p>
</article>
</body></html>"""


@pytest.mark.asyncio
async def test_page_cannot_embed_local_files(tmp_path):
    secret_png = tmp_path / "secret.png"
    secret_txt = tmp_path / "secret.txt"
    secret_png.write_bytes(b"top secret png")
    secret_txt.write_bytes(b"top secret txt")
    html = _page(f'<img src="file://{secret_png}"><img src="file://{secret_txt}">'
                 f'<video src="file://{secret_png}"></video>')
    output = tmp_path / "out.epub"
    options = ConversionOptions(output=str(output), temp_dir=str(tmp_path / "build"))

    async with aiohttp.ClientSession() as session:
        await convert(Source(url="https://example.com/article", html=html), options, session)

    with zipfile.ZipFile(output) as zf:
        assert not [n for n in zf.namelist() if n.startswith(("OEBPS/images/", "OEBPS/audiovideo/"))]
        for name in zf.namelist():
            data = zf.read(name)
            assert b"top secret" not in data
            assert str(tmp_path).encode() not in data
    assert secret_png.exists() and secret_txt.exists()


def test_epub2_skips_media_download(tmp_path, downloader):
    options = ConversionOptions(epub_version=2, download_media=True, ytdlp_binary=downloader.command,
                                temp_dir=str(tmp_path))
    job = ConversionJob(Source(url="https://example.com/article"), options, session=None)

    assert not job.media_settings().enabled

    options.epub_version = 3
    assert job.media_settings().enabled


@pytest.mark.asyncio
async def test_cancelled_conversion_removes_its_directories(tmp_path, downloader, process_gone):
    html = _page('<iframe src="https://www.youtube.com/embed/abc"></iframe>')
    output = tmp_path / "out.epub"
    options = ConversionOptions(output=str(output), temp_dir=str(tmp_path / "build"), download_media=True,
                                media_formats=["slow"], ytdlp_binary=downloader.command)
    job = ConversionJob(Source(url="https://example.com/article", html=html), options, session=None)
    # Left over from an earlier stage of this build.
    os.makedirs(job.build_dir)
    (tmp_path / "build" / job.build_id / "partial.xhtml").write_text("<p/>")

    task = asyncio.create_task(job.run())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 20
    while not (os.path.isdir(job.media_dir) and os.listdir(job.media_dir)):
        assert loop.time() < deadline, "downloader never started"
        assert not task.done()
        await asyncio.sleep(0.05)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not os.path.exists(job.media_dir)
    assert not os.path.exists(job.build_dir)
    assert not output.exists()
    assert await process_gone(downloader.started()[0])
