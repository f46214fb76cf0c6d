import argparse
import sys
import signal
import asyncio
import logging
from typing import List

from epub_downloader.models import log, Source, split_formats
from epub_downloader.errors import EpubDownloaderError
from epub_downloader.core.config import ConfigManager
from epub_downloader.core.session import get_session
from epub_downloader.core.pipeline import convert, convert_many

def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="epub-downloader", description="Save a web article as an EPUB")
    parser.add_argument("url", nargs='+', help="URL(s) of the article(s)")
    parser.add_argument("-o", "--output", help="Filepath for the epub (single URL only)")
    parser.add_argument("-p", "--path", help="Directory for the epub, filename is generated; only used without -o")
    parser.add_argument("-s", "--create_subfolders", action="store_true", default=None,
                        help="Create subfolders by site name; only used without -o")
    parser.add_argument("-c", "--cover", help="URL or path of a cover image")
    parser.add_argument("-m", "--download_media", action="store_true", default=None,
                        help="Download embedded YouTube/Twitter videos (yt-dlp needs to be in $PATH)")
    parser.add_argument("-f", "--media_format",
                        help="yt-dlp format selectors joined by '_', tried in order; only used with -m")
    parser.add_argument("--media_filesize", type=float,
                        help="Maximum media size in MiB before falling back to the next format; only used with -m")
    parser.add_argument("--strict-size-cap", action="store_true", default=None, dest="strict_size_cap",
                        help="Fail instead of keeping the last format when it is larger than --media_filesize")
    parser.add_argument("--epub-version", type=int, choices=(2, 3), dest="epub_version")
    parser.add_argument("--repair", action="store_true", default=None, dest="repair_archive",
                        help="Run 'zip -F' on the finished file")
    parser.add_argument("--ytdlp", dest="ytdlp_binary", help="Path to the yt-dlp executable")
    parser.add_argument("--temp-dir", dest="temp_dir", help="Where build directories are created")
    parser.add_argument("-v", "--verbose", action="store_true", default=None)
    args = parser.parse_args(argv)
    if args.output and len(args.url) > 1:
        parser.error("-o/--output expects a single URL")
    return args

def build_options(args):
    return ConfigManager.get_instance().options(
        output=args.output,
        path=args.path,
        create_subfolders=args.create_subfolders,
        cover=args.cover,
        download_media=args.download_media,
        media_formats=split_formats(args.media_format),
        media_filesize=args.media_filesize,
        strict_size_cap=args.strict_size_cap,
        epub_version=args.epub_version,
        repair_archive=args.repair_archive,
        ytdlp_binary=args.ytdlp_binary,
        temp_dir=args.temp_dir,
        verbose=args.verbose,
    )

async def async_main(argv=None) -> int:
    args = parse_args(argv)
    options = build_options(args)
    if options.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            pass

    sources: List[Source] = [Source(url=u) for u in args.url]
    async with get_session() as session:
        if len(sources) == 1:
            try:
                await convert(sources[0], options, session)
            except EpubDownloaderError as e:
                log.error(str(e))
                return 1
            return 0
        results = await convert_many(sources, options, session)

    if not any(results):
        log.error("No content was successfully converted.")
        return 1
    return 0

def run():
    try:
        sys.exit(asyncio.run(async_main()))
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.error("Interrupted.")
        sys.exit(130)

if __name__ == "__main__":
    run()
