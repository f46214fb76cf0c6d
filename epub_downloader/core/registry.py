import mimetypes
from urllib.parse import urlparse
from typing import List, Optional, Tuple

from ..models import log, MediaAsset, IMAGE_DIR_IN_EPUB, AUDIOVIDEO_DIR_IN_EPUB, new_id

IMAGE_ELEMENTS = ("img", "input")
AUDIOVIDEO_ELEMENTS = ("audio", "video")
SUBFOLDER_TYPE_PREFIXES = {
    IMAGE_DIR_IN_EPUB: ("image/",),
    AUDIOVIDEO_DIR_IN_EPUB: ("audio/", "video/"),
}

for _mime, _ext in (("image/webp", ".webp"), ("image/avif", ".avif"), ("image/jxl", ".jxl"),
                    ("audio/mp4", ".m4a"), ("video/webm", ".webm"), ("audio/ogg", ".ogg")):
    mimetypes.add_type(_mime, _ext)

# mimetypes.guess_extension() depends on the platform's mime.types for these.
PREFERRED_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/avif": "avif",
    "image/jxl": "jxl",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "audio/mp4": "m4a",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
}


def resolve_media_type(locator: str) -> Optional[Tuple[str, str]]:
    """(media_type, extension) from the path of a URL or file:// locator."""
    path = urlparse(locator).path if "://" in locator else locator.split("?", 1)[0]
    media_type, _ = mimetypes.guess_type(path, strict=False)
    if not media_type:
        return None
    extension = PREFERRED_EXTENSIONS.get(media_type)
    if not extension:
        guessed = mimetypes.guess_extension(media_type, strict=False)
        if not guessed:
            return None
        extension = guessed.lstrip(".")
    return media_type, extension


class MediaRegistry:
    """Media referenced by one document, deduplicated by locator."""

    def __init__(self, version: int = 3):
        self.version = version
        self.images: List[MediaAsset] = []
        self.audio_video: List[MediaAsset] = []

    def subfolder_for(self, element_kind: str) -> Optional[str]:
        if element_kind in IMAGE_ELEMENTS:
            return IMAGE_DIR_IN_EPUB
        if element_kind in AUDIOVIDEO_ELEMENTS and self.version != 2:
            return AUDIOVIDEO_DIR_IN_EPUB
        return None

    def find(self, locator: str) -> Optional[MediaAsset]:
        for asset in self.images + self.audio_video:
            if asset.locator == locator:
                return asset
        return None

    def register(self, locator: str, element_kind: str) -> Optional[Tuple[str, str]]:
        """Returns (id, extension), or None when the element is not tracked or the type is unknown."""
        subfolder = self.subfolder_for(element_kind)
        if subfolder is None:
            return None

        existing = self.find(locator)
        if existing:
            return existing.id, existing.extension

        resolved = resolve_media_type(locator)
        if not resolved:
            log.warning(f"[Media Error] The media can't be processed: {locator}")
            return None
        media_type, extension = resolved
        if not media_type.startswith(SUBFOLDER_TYPE_PREFIXES[subfolder]):
            log.warning(f"[Media Error] Not a media file for <{element_kind}>: {locator} ({media_type})")
            return None
        asset =MediaAsset(id=new_id(), locator=locator, subfolder=subfolder,
                           media_type=media_type, extension=extension)
        if subfolder == IMAGE_DIR_IN_EPUB:
            self.images.append(asset)
        else:
            self.audio_video.append(asset)
        return asset.id, asset.extension

    @property
    def assets(self) -> List[MediaAsset]:
        return self.images + self.audio_video
