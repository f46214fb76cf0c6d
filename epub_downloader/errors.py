from typing import Optional


class EpubDownloaderError(Exception):
    """Base class for conversion failures."""


class FatalBuildError(EpubDownloaderError):
    """The whole conversion is aborted and no output file is written."""


class AssetAcquisitionError(EpubDownloaderError):
    """A single media asset could not be fetched or typed; the build goes on without it."""

    def __init__(self, locator: str, reason: str):
        super().__init__(f"The media can't be processed: {locator} ({reason})")
        self.locator = locator
        self.reason = reason


class DownloaderError(EpubDownloaderError):
    """The external downloader exited with an error of its own."""

    def __init__(self, code: Optional[int], stderr: str = "", process_error: Optional[BaseException] = None):
        message = f"Error code: {code}"
        if process_error:
            message += f"\n\nProcess error:\n{process_error}"
        if stderr:
            message += f"\n\nStderr:\n{stderr}"
        super().__init__(message)
        self.code = code
        self.stderr = stderr


class FormatUnavailableError(DownloaderError):
    """The downloader rejected the requested format selector."""


class ProcessControlError(DownloaderError):
    """The downloader process could not be spawned."""


class AcquisitionExhausted(EpubDownloaderError):
    """Every entry of the format cascade was tried without success."""

    def __init__(self, source_url: str, attempts: int):
        super().__init__(f"No usable format for {source_url} after {attempts} attempt(s)")
        self.source_url = source_url
        self.attempts = attempts


FormatCascadeExhausted = AcquisitionExhausted
