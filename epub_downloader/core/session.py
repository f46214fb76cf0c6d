import os
import shutil
import asyncio
import aiohttp
import socket
from contextlib import asynccontextmanager
from typing import Dict, Optional
from aiohttp.resolver import ThreadedResolver

from ..models import log, REQUEST_TIMEOUT, MEDIA_TIMEOUT, MAX_RETRIES, RETRY_DELAY, USER_AGENT, local_path, is_within
from ..errors import AssetAcquisitionError

BROWSER_HEADERS = {
    'User-Agent': USER_AGENT,
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
}


@asynccontextmanager
async def get_session():
    # Threaded DNS avoids pycares issues on some platforms; IPv4 only.
    connector = aiohttp.TCPConnector(
        resolver=ThreadedResolver(),
        ttl_dns_cache=300,
        family=socket.AF_INET
    )
    async with aiohttp.ClientSession(timeout=REQUEST_TIMEOUT, connector=connector) as session:
        yield session


async def fetch_with_retry(
    session,
    url,
    response_type='text',
    referer=None,
    non_retry_statuses: Optional[set] = None,
    extra_headers: Optional[Dict[str, str]] = None,
    max_retries: int = MAX_RETRIES,
    backoff: float = RETRY_DELAY,
    timeout=None
):
    final_url = url
    for attempt in range(max_retries):
        try:
            headers = dict(BROWSER_HEADERS)
            if referer:
                headers['Referer'] = referer
            if extra_headers:
                headers.update(extra_headers)

            async with session.get(url, headers=headers, timeout=timeout or REQUEST_TIMEOUT) as response:
                final_url = str(response.url)

                if response.status == 429:
                    retry_after = int(response.headers.get("Retry-After", 10))
                    wait_time = max(retry_after, backoff * (2 ** attempt))
                    log.warning(f"Rate limit hit (429). Cooling down for {wait_time}s...")
                    await asyncio.sleep(wait_time)
                    continue

                if non_retry_statuses and response.status in non_retry_statuses:
                    log.warning(f"Non-retryable HTTP {response.status} for {url}")
                    return None, final_url

                if response.status >= 400:
                    if response.status == 404: return None, final_url
                    log.warning(f"HTTP {response.status} for {url}")

                response.raise_for_status()

                if response_type == 'bytes': return await response.read(), final_url
                elif response_type == 'json': return await response.json(), final_url
                else: return await response.text(encoding='utf-8', errors='replace'), final_url

        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
            wait = backoff * (2 ** attempt)
            log.warning(f"Attempt {attempt + 1}/{max_retries} failed for {url}: {e}. Retrying in {wait}s.")
            if attempt + 1 == max_retries: return None, url
            await asyncio.sleep(wait)
    return None, url


async def download_to_file(session, locator: str, destination: str, user_agent: Optional[str] = None,
                           move_from: Optional[str] = None, allow_local: bool = False) -> None:
    """
    Place the resource behind `locator` at `destination`.

    file:// locators and plain paths inside `move_from` are moved (they are our
    own temporary downloads). Any other local path is refused unless
    `allow_local` is set, in which case it is copied. Everything else is fetched
    over HTTP. Raises AssetAcquisitionError on failure.
    """
    path = local_path(locator)
    if path is None and "://" not in locator:
        path = locator
    if path is not None:
        owned = is_within(path, move_from)
        if not owned and not allow_local:
            raise AssetAcquisitionError(locator, "local file outside the working directory")
        if not os.path.exists(path):
            raise AssetAcquisitionError(locator, "file not found")
        if owned:
            shutil.move(path, destination)
        else:
            shutil.copyfile(path, destination)
        return

    log.debug(f"Downloading {locator}")
    extra = {'User-Agent': user_agent} if user_agent else None
    data, _ = await fetch_with_retry(session, locator, 'bytes', extra_headers=extra, timeout=MEDIA_TIMEOUT)
    if not data:
        raise AssetAcquisitionError(locator, "download failed")
    with open(destination, 'wb') as f:
        f.write(data)
