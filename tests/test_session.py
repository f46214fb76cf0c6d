import pytest

from epub_downloader.core.session import download_to_file
from epub_downloader.errors import AssetAcquisitionError


@pytest.mark.asyncio
async def test_own_media_is_moved(tmp_path):
    media_dir = tmp_path / "media"
    media_dir.mkdir()
    clip = media_dir / "clip.mp4"
    clip.write_bytes(b"video")
    destination = tmp_path / "out.mp4"

    await download_to_file(None, f"file://{clip}", str(destination), move_from=str(media_dir))

    assert destination.read_bytes() == b"video"
    assert not clip.exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("as_locator", [True, False])
async def test_foreign_local_file_refused(tmp_path, as_locator):
    media_dir = tmp_path / "media"
    media_dir.mkdir()
    secret = tmp_path / "secret.png"
    secret.write_bytes(b"top secret")
    destination = tmp_path / "out.png"
    locator = f"file://{secret}" if as_locator else str(secret)

    with pytest.raises(AssetAcquisitionError):
        await download_to_file(None, locator, str(destination), move_from=str(media_dir))

    assert not destination.exists()
    assert secret.exists()


@pytest.mark.asyncio
async def test_explicit_local_file_is_copied(tmp_path):
    cover = tmp_path / "cover.png"
    cover.write_bytes(b"png")
    destination = tmp_path / "out.png"

    await download_to_file(None, str(cover), str(destination), allow_local=True)

    assert destination.read_bytes() == b"png"
    assert cover.exists()
