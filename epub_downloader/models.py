import os
import re
import uuid
import logging
import tempfile
import aiohttp
from dotenv import load_dotenv
from datetime import datetime, timezone
from urllib.parse import urlparse
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

# Load environment variables from .env file
load_dotenv()

# --- Constants ---
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=45)
MEDIA_TIMEOUT = aiohttp.ClientTimeout(total=120)
MAX_RETRIES = 3
RETRY_DELAY = 2.0
USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'

EPUB_MIMETYPE = "application/epub+zip"
IMAGE_DIR_IN_EPUB = "images"
AUDIOVIDEO_DIR_IN_EPUB = "audiovideo"
IMAGE_PLACEHOLDER_ALT = "image-placeholder"
DEFAULT_TEMP_DIR = os.path.join(tempfile.gettempdir(), "epub_downloader")
MAX_FILENAME_BYTES = 255

YTDLP_BINARY = os.getenv("EPUB_DOWNLOADER_YTDLP", "yt-dlp")
FORMAT_UNAVAILABLE_MESSAGE = "Requested format is not available."
YOUTUBE_FORMATS = [
    'worstvideo[vcodec!*=av01][height>=?420]+bestaudio[acodec!*=opus][abr<120]',
    'worstvideo[vcodec!*=av01][height>=?360]+bestaudio[acodec!*=opus][abr<120]',
    'worstvideo+worstaudio',
]
TWITTER_FORMATS = [
    'worstvideo[vcodec!*=av01][height>=?420]+bestaudio[abr<120]',
    'worstvideo+worstaudio',
    'bestaudio[abr<120]',
]

# --- Logging ---
_LOGLEVEL = os.getenv("LOGLEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, _LOGLEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)

# --- Allow-lists ---

# Attributes kept on content elements. Event handlers are removed earlier by the sanitizer.
DEFAULT_ALLOWED_ATTRIBUTES = frozenset([
    "content", "alt", "id", "title", "src", "href", "about", "accesskey",
    "aria-activedescendant", "aria-atomic", "aria-autocomplete", "aria-busy",
    "aria-checked", "aria-controls", "aria-describedat", "aria-describedby",
    "aria-disabled", "aria-dropeffect", "aria-expanded", "aria-flowto",
    "aria-grabbed", "aria-haspopup", "aria-hidden", "aria-invalid",
    "aria-label", "aria-labelledby", "aria-level", "aria-live",
    "aria-multiline", "aria-multiselectable", "aria-orientation", "aria-owns",
    "aria-posinset", "aria-pressed", "aria-readonly", "aria-relevant",
    "aria-required", "aria-selected", "aria-setsize", "aria-sort",
    "aria-valuemax", "aria-valuemin", "aria-valuenow", "aria-valuetext",
    "class", "contenteditable", "contextmenu", "controls", "datatype", "dir",
    "draggable", "dropzone", "hidden", "hreflang", "inlist", "itemid",
    "itemref", "itemscope", "itemtype", "lang", "media", "prefix", "property",
    "rel", "resource", "rev", "role", "spellcheck", "style", "tabindex",
    "target", "type", "typeof", "vocab", "xml:base", "xml:lang", "xml:space",
    "colspan", "rowspan", "epub:type", "epub:prefix",
])

# Tags permitted by the XHTML 1.1 DTD used by EPUB 2.
DEFAULT_ALLOWED_XHTML11_TAGS = frozenset([
    "div", "p", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "li", "dl",
    "dt", "dd", "address", "hr", "pre", "blockquote", "center", "ins", "del",
    "a", "span", "bdo", "br", "em", "strong", "dfn", "code", "samp", "kbd",
    "bar", "cite", "abbr", "acronym", "q", "sub", "sup", "tt", "i", "b", "big",
    "small", "u", "s", "strike", "basefont", "font", "object", "param", "img",
    "table", "caption", "colgroup", "col", "thead", "tfoot", "tbody", "tr",
    "th", "td", "embed", "applet", "iframe", "map", "noscript", "ns:svg",
    "script", "var",
])

# --- Data Structures ---

@dataclass
class ConversionOptions:
    """Configuration passed from CLI or Server to the conversion pipeline."""
    output: Optional[str] = None
    path: Optional[str] = None
    create_subfolders: bool = False
    cover: Optional[str] = None
    download_media: bool = False
    media_formats: Optional[List[str]] = None
    media_filesize: Optional[float] = None
    strict_size_cap: bool = False
    epub_version: int = 3
    repair_archive: bool = False
    temp_dir: str = DEFAULT_TEMP_DIR
    ytdlp_binary: str = YTDLP_BINARY
    verbose: bool = False

@dataclass
class Source:
    """Represents an input source: URL and optional pre-fetched HTML."""
    url: str
    html: Optional[str] = None

@dataclass
class ContentSpec:
    """One chapter as supplied by the caller, before transformation."""
    title: Optional[str]
    data: str
    filename: Optional[str] = None
    url: Optional[str] = None
    author: Optional[Any] = None
    exclude_from_toc: bool = False
    before_toc: bool = False

@dataclass
class EpubOptions:
    """Book-level settings. Validated once when the document is built."""
    title: Optional[str]
    content: List[ContentSpec] = field(default_factory=list)
    description: str = ""
    cover: Optional[str] = None
    first_image_is_cover: bool = False
    publisher: str = "anonymous"
    author: Optional[Any] = None
    toc_title: str = "Table Of Contents"
    append_chapter_titles: bool = True
    hide_toc: bool = False
    date: Optional[str] = None
    lang: str = "en"
    css: Optional[str] = None
    fonts: List[str] = field(default_factory=list)
    custom_opf_template_path: Optional[str] = None
    custom_ncx_toc_template_path: Optional[str] = None
    custom_html_toc_template_path: Optional[str] = None
    custom_html_cover_template_path: Optional[str] = None
    version: int = 3
    user_agent: str = USER_AGENT
    verbose: bool = False
    temp_dir: str = DEFAULT_TEMP_DIR
    local_media_dir: Optional[str] = None
    allowed_attributes: frozenset = DEFAULT_ALLOWED_ATTRIBUTES
    allowed_xhtml11_tags: frozenset = DEFAULT_ALLOWED_XHTML11_TAGS

@dataclass
class ContentItem:
    id: str
    href: str
    title: str
    raw_data: str
    transformed_data: str = ""
    source_url: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    template_path: Optional[str] = None
    is_cover: bool = False
    exclude_from_toc: bool = False
    before_toc: bool = False

@dataclass
class MediaAsset:
    id: str
    locator: str
    subfolder: str
    media_type: str
    extension: str
    stored: bool = False

    @property
    def href(self) -> str:
        return f"{self.subfolder}/{self.id}.{self.extension}"

@dataclass
class ArticleData:
    """Reader-mode view of a fetched page."""
    title: Optional[str]
    html_content: str
    text_content: str = ""
    byline: Optional[str] = None
    site_name: Optional[str] = None
    excerpt: Optional[str] = None
    language: Optional[str] = None
    published_time: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

# --- Helper Functions ---

def new_id() -> str:
    return uuid.uuid4().hex

def slug(text: str, reserved: int = 0) -> str:
    """Lowercase, spaces to hyphens, anything outside [0-9a-z-_] removed."""
    cleaned = re.sub(r'[^0-9a-z\-_]', '', text.replace(' ', '-').lower())
    return cleaned[:MAX_FILENAME_BYTES - reserved]

def host_of_url(url: str) -> str:
    host = urlparse(url).netloc
    if host.startswith("www."):
        host = host[4:]
    if host.endswith(".com"):
        host = host[:-4]
    return host

def output_filename(title: str, published: datetime) -> str:
    """<YYYY-MM-DD>_<slug>.epub, sized to fit a 255 byte file name."""
    datestring = published.astimezone(timezone.utc).strftime("%Y-%m-%d")
    return f"{datestring}_{slug(title, reserved=5 + 11)}.epub"

def parse_published(value: Optional[str]) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except ValueError:
            log.debug(f"Unparseable published date: {value}")
    return datetime.now(timezone.utc)

def split_formats(spec: Optional[str]) -> Optional[List[str]]:
    """A user format string holds several yt-dlp selectors joined by '_'."""
    if not spec:
        return None
    formats = [f for f in spec.split('_') if f]
    return formats or None

FILE_SCHEME = "file://"

def to_file_locator(path: str) -> str:
    return f"{FILE_SCHEME}{os.path.abspath(path)}"

def local_path(locator: str) -> Optional[str]:
    """Path behind a file:// locator, or None for anything else."""
    if locator and locator.startswith(FILE_SCHEME):
        return locator[len(FILE_SCHEME):]
    return None

def is_within(path: str, directory: Optional[str]) -> bool:
    """True when path resolves to a location below directory (symlinks followed)."""
    if not path or not directory:
        return False
    root = os.path.realpath(directory)
    return os.path.realpath(path).startswith(root + os.sep)
