from epub_downloader.core.sanitizer import sanitize


def test_removes_scripts_and_handlers():
    html = sanitize('<p onclick="steal()">Hi<script>alert(1)</script></p><!-- note --><style>p{}</style>')
    assert html == '<p>Hi</p>'


def test_removes_unsafe_urls():
    html = sanitize('<a href="javascript:alert(1)">x</a><a href="https://ok.example/">y</a>'
                    '<img src="data:image/png;base64,AAAA"><a href="data:text/html,hi">z</a>')
    assert 'javascript:' not in html
    assert 'href="https://ok.example/"' in html
    assert 'src="data:image/png;base64,AAAA"' in html
    assert 'data:text/html' not in html


def test_relative_urls_survive():
    html = sanitize('<a href="/about">about</a><a href="#note">note</a>')
    assert 'href="/about"' in html
    assert 'href="#note"' in html


def test_local_media_only_from_own_media_dir(tmp_path):
    media_dir = tmp_path / "job_media"
    media_dir.mkdir()
    clip = f"file://{media_dir}/clip.mp4"
    fragment = f'<video src="{clip}"></video><a href="{clip}">x</a>'

    assert 'file://' not in sanitize(fragment)

    kept = sanitize(fragment, local_media_dir=str(media_dir))
    assert f'<video src="{clip}">' in kept
    assert f'href="{clip}"' not in kept


def test_local_files_outside_media_dir_removed(tmp_path):
    media_dir = tmp_path / "job_media"
    media_dir.mkdir()
    fragment = (
        '<img src="file:///etc/passwd">'
        f'<img src="file://{tmp_path}/secret.png">'
        f'<video src="file://{media_dir}/../secret.mp4"></video>'
        f'<audio src="file://{tmp_path}/job_media_other/a.m4a"></audio>'
    )

    html = sanitize(fragment, local_media_dir=str(media_dir))

    assert 'file://' not in html
