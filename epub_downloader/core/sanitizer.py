from typing import Optional
from bs4 import BeautifulSoup, Comment

from ..models import FILE_SCHEME, is_within, local_path

DANGEROUS_TAGS = ['script', 'style', 'noscript', 'object', 'embed', 'applet', 'form',
                  'button', 'input', 'textarea', 'select', 'frame', 'frameset', 'base', 'meta', 'link']
URL_ATTRIBUTES = ('href', 'src', 'poster', 'action', 'xlink:href')
SAFE_SCHEMES = ('http://', 'https://', 'mailto:', '#')
LOCAL_MEDIA_TAGS = ('video', 'audio', 'img')


def _is_safe_url(tag_name: str, value: str, local_media_dir: Optional[str]) -> bool:
    stripped = value.strip()
    lowered = stripped.lower()
    if lowered.startswith(FILE_SCHEME):
        return tag_name in LOCAL_MEDIA_TAGS and is_within(local_path(stripped), local_media_dir)
    if lowered.startswith('data:'):
        return tag_name == 'img' and lowered.startswith('data:image/')
    if ':' in lowered.split('/', 1)[0]:
        return lowered.startswith(SAFE_SCHEMES)
    return True


def sanitize(html: str, local_media_dir: Optional[str] = None) -> str:
    """
    Strip script-capable markup from an HTML fragment.

    Removes executable elements, comments, event handler attributes and URLs with
    unsafe schemes. file:// references survive only on video, audio and img, and
    only when they point inside local_media_dir: the media this conversion
    downloaded itself.
    """
    soup = BeautifulSoup(html or "", 'html.parser')
    for tag in soup(DANGEROUS_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in URL_ATTRIBUTES:
                value = tag[attr]
                if isinstance(value, list):
                    value = " ".join(value)
                if not _is_safe_url(tag.name, value, local_media_dir):
                    del tag[attr]
    return soup.decode(formatter="minimal")
