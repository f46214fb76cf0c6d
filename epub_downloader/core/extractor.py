import asyncio
import trafilatura
from bs4 import BeautifulSoup, Comment
from urllib.parse import urljoin

from ..models import log, ArticleData, Source
from ..errors import FatalBuildError
from .filters import prepare_dom_for_extraction
from .session import fetch_with_retry, BROWSER_HEADERS

CONTENT_SELECTORS = ['article', '[data-qa="article-body"]', '[role="main"]', '.main-content', '.post-content',
                     '.entry-content', '#main', '#content', '.article-body', '.storycontent']
ALLOWED_ATTRS = {'src', 'href', 'alt', 'title', 'id', 'colspan', 'rowspan', 'width', 'height',
                 'controls', 'lang', 'type', 'poster'}
RESOLVED_ATTRS = (('img', 'src'), ('video', 'src'), ('audio', 'src'), ('source', 'src'),
                  ('iframe', 'src'), ('a', 'href'))


class ArticleExtractor:
    @staticmethod
    async def _requests_fetch(url):
        try:
            import requests
            loop = asyncio.get_running_loop()
            def _do_req():
                return requests.get(url, headers=BROWSER_HEADERS, timeout=20, allow_redirects=True)

            resp = await loop.run_in_executor(None, _do_req)
            if resp.status_code == 200 and resp.text:
                return resp.text, resp.url
        except Exception as e:
            log.debug(f"Article requests fetch failed for {url}: {e}")
        return None, None

    @staticmethod
    def extract(html_content: str, base_url: str) -> ArticleData:
        """Reader-mode extraction: metadata plus the main content fragment."""
        metadata = trafilatura.extract_metadata(html_content, default_url=base_url)
        soup = BeautifulSoup(html_content, 'lxml')
        prepare_dom_for_extraction(soup)

        language = None
        if soup.html and soup.html.get('lang'):
            language = soup.html['lang'][:2].lower()

        title = metadata.title if metadata and metadata.title else None
        if not title and soup.title and soup.title.string:
            title = soup.title.string.strip() or None

        content_soup = ArticleExtractor._smart_selector_extract(soup)
        if content_soup is not None:
            ArticleExtractor._clean_soup(content_soup)
            ArticleExtractor._resolve_urls(content_soup, base_url)
            extracted_html = content_soup.decode_contents()
            text = content_soup.get_text(" ", strip=True)
        else:
            log.info("Selectors failed, falling back to Trafilatura extraction.")
            extracted_html = trafilatura.extract(str(soup), url=base_url, include_images=True,
                                                 include_tables=True, output_format='html') or ""
            text = trafilatura.extract(str(soup), url=base_url) or ""
            if not extracted_html and soup.body and len(soup.body.get_text(strip=True)) > 100:
                log.warning("Extraction returned empty. Using full body as fallback.")
                ArticleExtractor._clean_soup(soup.body)
                ArticleExtractor._resolve_urls(soup.body, base_url)
                extracted_html = soup.body.decode_contents()
                text = soup.body.get_text(" ", strip=True)

        if not extracted_html:
            raise FatalBuildError(f"No readable content found at {base_url}")

        return ArticleData(
            title=title,
            html_content=extracted_html,
            text_content=text,
            byline=metadata.author if metadata else None,
            site_name=metadata.sitename if metadata else None,
            excerpt=metadata.description if metadata else None,
            language=language,
            published_time=metadata.date if metadata else None,
        )

    @staticmethod
    def _smart_selector_extract(soup):
        for selector in CONTENT_SELECTORS:
            found = soup.select_one(selector)
            if found and len(found.get_text(strip=True)) > 200:
                log.info(f"Found content using selector: '{selector}'")
                return found
        return None

    @staticmethod
    def _clean_soup(soup):
        # iframes stay: embedded players are replaced later.
        for tag in soup(['script', 'style', 'noscript', 'footer', 'nav', 'aside', 'form', 'button', 'svg']):
            tag.decompose()
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        for tag in soup.find_all(True):
            if not tag.attrs: continue
            for attr in list(tag.attrs.keys()):
                if attr not in ALLOWED_ATTRS:
                    del tag[attr]

    @staticmethod
    def _resolve_urls(soup, base_url: str):
        for name, attr in RESOLVED_ATTRS:
            for tag in soup.find_all(name):
                value = tag.get(attr)
                if value and not value.startswith(('data:', '#', 'mailto:')):
                    tag[attr] = urljoin(base_url, value)

    @staticmethod
    async def get_article(session, source: Source) -> ArticleData:
        loop = asyncio.get_running_loop()
        raw_html = source.html
        final_url = source.url
        if raw_html:
            log.info("Using pre-fetched HTML content.")
        else:
            raw_html, final_url = await fetch_with_retry(session, source.url, 'text', non_retry_statuses={403})
            if not raw_html:
                log.warning(f"aiohttp failed for {source.url}, trying requests fallback...")
                raw_html, final_url = await ArticleExtractor._requests_fetch(source.url)
        if not raw_html:
            raise FatalBuildError(f"Could not fetch {source.url}")
        return await loop.run_in_executor(None, ArticleExtractor.extract, raw_html, final_url or source.url)
