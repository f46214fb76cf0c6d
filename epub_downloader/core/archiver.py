import os
import shutil
import zipfile
import subprocess
from typing import Iterator, Tuple

from ..models import log, EPUB_MIMETYPE, new_id
from ..errors import FatalBuildError

PACKAGED_DIRS = ("META-INF", "OEBPS")


def iter_build_files(build_dir: str) -> Iterator[Tuple[str, str]]:
    """(absolute path, archive name) for every file of the build, in a stable order."""
    for top in PACKAGED_DIRS:
        root_dir = os.path.join(build_dir, top)
        if not os.path.isdir(root_dir):
            raise FatalBuildError(f"Build directory is missing {top}/: {build_dir}")
        for dirpath, dirnames, filenames in os.walk(root_dir):
            dirnames.sort()
            for filename in sorted(filenames):
                full_path = os.path.join(dirpath, filename)
                arcname = os.path.relpath(full_path, build_dir).replace(os.sep, "/")
                yield full_path, arcname


class Archiver:
    """Packs a rendered build directory into an .epub file."""

    def __init__(self, compresslevel: int = 9, repair: bool = False):
        self.compresslevel = compresslevel
        self.repair = repair

    def archive(self, build_dir: str, output_path: str) -> None:
        log.info(f"Zipping temp dir to {output_path}")
        try:
            with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED,
                                 compresslevel=self.compresslevel) as zf:
                # Must be the first entry, stored uncompressed.
                zf.writestr("mimetype", EPUB_MIMETYPE, compress_type=zipfile.ZIP_STORED)
                for full_path, arcname in iter_build_files(build_dir):
                    zf.write(full_path, arcname)
        except FatalBuildError:
            _remove_partial(output_path)
            raise
        except (OSError, zipfile.BadZipFile) as e:
            _remove_partial(output_path)
            raise FatalBuildError(f"Could not write archive {output_path}: {e}") from e

        if self.repair:
            repair_archive(output_path, os.path.dirname(os.path.abspath(build_dir)))

        log.info("Done zipping, clearing temp dir...")
        shutil.rmtree(build_dir, ignore_errors=True)


def _remove_partial(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)


def repair_archive(path: str, work_dir: str) -> bool:
    """Rewrite the archive with `zip -F`. Best effort: failures are only logged."""
    fixed = os.path.join(work_dir, f"fix_{new_id()}.zip")
    try:
        result = subprocess.run(["zip", "-F", path, "--out", fixed], capture_output=True, text=True, check=False)
    except OSError as e:
        log.warning(f"Archive repair skipped, zip not available: {e}")
        return False
    if result.stdout:
        log.debug(result.stdout)
    if result.returncode != 0:
        log.warning(f"zip -F failed with code {result.returncode}")
        if os.path.exists(fixed):
            os.remove(fixed)
        return False
    shutil.move(fixed, path)
    return True
