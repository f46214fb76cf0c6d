from bs4 import BeautifulSoup, Tag
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..models import log, host_of_url, YOUTUBE_FORMATS, TWITTER_FORMATS
from ..errors import AcquisitionExhausted, DownloaderError
from .acquirer import MediaAcquirer

PICTURE_TYPE_PRIORITY = ['image/png', 'image/jpeg', 'image/webp', 'image/jxl', 'image/avif']
YOUTUBE_HOSTS = ('youtube', 'youtu.be')
TWITTER_HOSTS = ('twitter', 'x')
UNSUPPORTED_MEDIA_TEXT = "There is {} content at this location that is not currently supported on your device."


@dataclass
class MediaSettings:
    """How embedded media gets fetched during a conversion."""
    acquirer: Optional[MediaAcquirer] = None
    work_dir: Optional[str] = None
    formats: Optional[List[str]] = None
    size_cap: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.acquirer is not None and self.work_dir is not None

    def cascade(self, default: Sequence[str]) -> List[str]:
        return list(self.formats or default)


def _priority(media_type: Optional[str], priority: List[str]) -> int:
    return priority.index(media_type) if media_type in priority else len(priority)


def choose_source(container: Tag, type_priority: List[str]) -> dict:
    """Pick one URL out of the <source>/<img> children of a <picture> or <video>."""
    chosen_source = None
    chosen_type = None
    alt_text = None
    for child in container.children:
        if not isinstance(child, Tag):
            continue
        if child.name == 'img' and container.name == 'picture':
            alt_text = child.get('alt')
            src = child.get('src')
            if src and not src.startswith('data:'):
                chosen_source = src
                break
        elif child.name == 'source':
            candidates = child.get('src') or child.get('srcset') or child.get('data-srcset')
            if not candidates or candidates.startswith('data:'):
                continue
            if chosen_source and _priority(child.get('type'), type_priority) >= _priority(chosen_type, type_priority):
                continue
            chosen_type = child.get('type')
            chosen_size = 0
            for entry in candidates.split(','):
                entry = entry.strip()
                if not entry or '.m3u8' in entry:
                    continue
                parts = entry.split(None, 1)
                if len(parts) == 1:
                    chosen_source = parts[0]
                    break
                try:
                    size = int(parts[1].rstrip('wx'))
                except ValueError:
                    chosen_source = parts[0]
                    break
                if size >= chosen_size:
                    chosen_size = size
                    chosen_source = parts[0]
        else:
            return {}
    if chosen_source:
        return {"src": chosen_source, "alt": alt_text}
    return {}


def choose_source_of_pictures(soup: BeautifulSoup) -> None:
    for picture in soup.find_all('picture'):
        chosen = choose_source(picture, PICTURE_TYPE_PRIORITY)
        if chosen:
            img = soup.new_tag('img', src=chosen["src"])
            if chosen.get("alt"):
                img['alt'] = chosen["alt"]
            picture.replace_with(img)


def choose_source_of_videos(soup: BeautifulSoup) -> None:
    for video in soup.find_all('video'):
        if video.get('src'):
            continue
        chosen = choose_source(video, [])
        if chosen:
            media = soup.new_tag('video', src=chosen["src"], controls="controls")
            media.string = UNSUPPORTED_MEDIA_TEXT.format('video')
            if video.get('title'):
                media['title'] = video['title']
            video.replace_with(media)


def remove_placeholder_images(soup: BeautifulSoup) -> None:
    """Figures holding a real image plus a white placeholder keep only the image."""
    for figure in soup.find_all('figure'):
        images = figure.find_all('img')
        if len(images) != 2:
            continue
        placeholders = [i for i in images if 'placeholder' in (i.get('alt') or '') or 'placeholder' in (i.get('src') or '')]
        if len(placeholders) != 1:
            continue
        placeholders[0].decompose()
        image = next(i for i in images if i is not placeholders[0])
        sibling = image.find_next_sibling()
        if sibling is not None and sibling.name == 'span':
            paragraph = soup.new_tag('p')
            paragraph.string = sibling.get_text()
            sibling.replace_with(paragraph)


def fix_nymag_image_wrappers(soup: BeautifulSoup) -> None:
    for img in soup.select('.mediaplay-image > .image-wrapper > img'):
        img.parent.parent.replace_with(img.extract())


def prepare_dom_for_extraction(soup: BeautifulSoup) -> None:
    choose_source_of_pictures(soup)
    fix_nymag_image_wrappers(soup)
    choose_source_of_videos(soup)
    remove_placeholder_images(soup)


async def _acquire(url: str, settings: MediaSettings, default_formats: Sequence[str]) -> str:
    return await settings.acquirer.acquire(url, settings.work_dir, settings.cascade(default_formats), settings.size_cap)


def _media_element(soup: BeautifulSoup, locator: str) -> Tag:
    kind = 'video' if locator.endswith('.mp4') else 'audio'
    media = soup.new_tag(kind, src=locator, controls="controls")
    media.string = UNSUPPORTED_MEDIA_TEXT.format(kind)
    return media


async def replace_iframe(soup: BeautifulSoup, frame: Tag, settings: MediaSettings) -> None:
    src = frame.get('src') or ''
    host = host_of_url(src) if src else ''
    node = frame
    # Replace the outermost wrapper that holds nothing but the frame.
    while node.parent is not None and node.parent.name not in ('[document]', 'body') \
            and len([c for c in node.parent.children if isinstance(c, Tag) or str(c).strip()]) <= 1:
        node = node.parent

    link = soup.new_tag('a', href=src)
    replacement = None
    if settings.enabled and host in YOUTUBE_HOSTS:
        try:
            locator = await _acquire(src, settings, YOUTUBE_FORMATS)
            link.string = f"Watch on {host}."
            replacement = soup.new_tag('figure')
            replacement.append(_media_element(soup, locator))
            caption = soup.new_tag('figcaption')
            caption.append(link)
            replacement.append(caption)
        except (AcquisitionExhausted, DownloaderError) as e:
            log.error(f"Media download failed for {src}: {e}")
    if replacement is None:
        link.string = f"Visit {host}."
        replacement = soup.new_tag('p')
        replacement.append(link)
    node.replace_with(replacement)


async def replace_iframes(soup: BeautifulSoup, settings: MediaSettings) -> None:
    for frame in soup.find_all('iframe'):
        await replace_iframe(soup, frame, settings)


async def check_quote_for_media(soup: BeautifulSoup, quote: Tag, settings: MediaSettings) -> None:
    """Quoted tweets may carry a video; try to fetch it and place it after the quote."""
    if not settings.enabled or quote.parent is None:
        return
    children = [c for c in quote.children if isinstance(c, Tag)]
    if not children or children[-1].name != 'p':
        return
    links = [c for c in children[-1].children if isinstance(c, Tag)]
    if not links or links[-1].name != 'a' or not links[-1].get('href'):
        return
    url = links[-1]['href']
    if host_of_url(url) not in TWITTER_HOSTS:
        return
    try:
        locator = await _acquire(url, settings, TWITTER_FORMATS)
    except (AcquisitionExhausted, DownloaderError) as e:
        log.error(str(e))
        return
    paragraph = soup.new_tag('p')
    paragraph.append(_media_element(soup, locator))
    quote.insert_after(paragraph)


async def check_quotes_for_media(soup: BeautifulSoup, settings: MediaSettings) -> None:
    for quote in soup.find_all('blockquote'):
        await check_quote_for_media(soup, quote, settings)


async def prepare_dom_for_epub(soup: BeautifulSoup, settings: MediaSettings) -> None:
    await replace_iframes(soup, settings)
    await check_quotes_for_media(soup, settings)
