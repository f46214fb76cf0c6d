from bs4 import BeautifulSoup, Tag
from typing import Iterable

from ..models import log, ContentItem, IMAGE_PLACEHOLDER_ALT
from .registry import MediaRegistry, IMAGE_ELEMENTS, AUDIOVIDEO_ELEMENTS


class ContentTransformer:
    """
    Turns a chapter's raw HTML into XHTML fit for the target EPUB version.

    Attributes and tags are validated first, then media references are handed to
    the registry and rewritten to their place inside the book. Validation runs
    first so demoted elements are never registered as media.
    """

    def __init__(self, registry: MediaRegistry, version: int = 3,
                 allowed_attributes: Iterable[str] = (), allowed_xhtml11_tags: Iterable[str] = (),
                 verbose: bool = False):
        self.registry = registry
        self.version = version
        self.allowed_attributes = frozenset(allowed_attributes)
        self.allowed_xhtml11_tags = frozenset(allowed_xhtml11_tags)
        self.verbose = verbose

    def transform(self, item: ContentItem) -> str:
        soup = BeautifulSoup(item.raw_data or "", 'html.parser')
        for tag in soup.find_all(True):
            self._validate_element(tag, item.id)
        for tag in soup.find_all(True):
            self._rewrite_media(tag)
        item.transformed_data = soup.decode(formatter="minimal")
        return item.transformed_data

    def _validate_element(self, tag: Tag, item_id: str) -> None:
        for attr in list(tag.attrs):
            if attr not in self.allowed_attributes:
                del tag[attr]
            elif attr == "type":
                if tag[attr] != "script":
                    del tag[attr]
            elif attr == "controls":
                tag[attr] = "controls"

        if tag.name == "img" and not tag.get("alt"):
            tag["alt"] = IMAGE_PLACEHOLDER_ALT

        if self.version == 2 and tag.name not in self.allowed_xhtml11_tags:
            if self.verbose:
                log.warning(f"Warning ({item_id}): {tag.name} tag isn't allowed on EPUB 2/XHTML 1.1 DTD.")
            tag.name = "div"
            # A div has no src; the reference would otherwise be left unrewritten.
            tag.attrs.pop("src", None)

    def _rewrite_media(self, tag: Tag) -> None:
        url = tag.get("src")
        if not url:
            return
        if tag.name not in IMAGE_ELEMENTS and tag.name not in AUDIOVIDEO_ELEMENTS:
            return
        registered = self.registry.register(url, tag.name)
        if registered is None:
            return
        media_id, extension = registered
        subfolder = self.registry.find(url).subfolder
        tag["src"] = f"{subfolder}/{media_id}.{extension}"
