import os
import sys
import asyncio
import pytest
from types import SimpleNamespace

# Stand-in for yt-dlp. The selector decides what it does:
#   missing*  -> "format not available" on stderr, exit 1
#   boom*     -> some other error, exit 2
#   big*      -> announces 50MiB, waits, then writes the file
#   bigtree*  -> like big, but first starts a sleeping child process
#   slow*     -> writes a partial file, announces 1MiB and hangs
#   anything else -> announces 1MiB and writes the file
FAKE_DOWNLOADER = '''
import os, subprocess, sys, time
args = sys.argv[1:]
url = args[0]
selector = args[args.index("-f") + 1]
target = args[args.index("-o") + 1]
with open({calls!r}, "a") as f:
    f.write(selector + "\\n")
with open({pids!r}, "a") as f:
    f.write("self %d\\n" % os.getpid())
if selector.startswith("missing"):
    sys.stderr.write("ERROR: [youtube] abc: Requested format is not available. Use --list-formats\\n")
    sys.exit(1)
if selector.startswith("boom"):
    sys.stderr.write("ERROR: unable to download webpage\\n")
    sys.exit(2)
if selector.startswith("slow"):
    with open(target + ".part", "wb") as f:
        f.write(b"partial")
    print("[download]  10.0% of 1.00MiB at 1.00KiB/s ETA 10:00", flush=True)
    time.sleep(30)
    sys.exit(0)
if selector.startswith("bigtree"):
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"],
                             stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    with open({pids!r}, "a") as f:
        f.write("child %d\\n" % child.pid)
if selector.startswith("big"):
    sys.stdout.write("[download]  10.0% of 50.00MiB at 1.00MiB/s ETA 00:45\\r")
    sys.stdout.flush()
    time.sleep(1.0 if selector == "bigvideo" else 30)
else:
    print("[download] 100.0% of 1.00MiB at 1.00MiB/s ETA 00:00", flush=True)
with open(target, "wb") as f:
    f.write(b"media:" + selector.encode())
'''


@pytest.fixture
def downloader(tmp_path):
    calls = tmp_path / "calls.txt"
    pids = tmp_path / "pids.txt"
    script = tmp_path / "fake_ytdlp.py"
    script.write_text(FAKE_DOWNLOADER.format(calls=str(calls), pids=str(pids)))

    def called():
        return calls.read_text().split() if calls.exists() else []

    def started(kind="self"):
        if not pids.exists():
            return []
        return [int(pid) for k, pid in (line.split() for line in pids.read_text().splitlines()) if k == kind]

    return SimpleNamespace(command=[sys.executable, str(script)], called=called, started=started)


def _running(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        with open(f"/proc/{pid}/stat") as f:
            # A zombie is dead, it just has not been reaped yet.
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except OSError:
        return True


@pytest.fixture
def process_gone():
    async def wait(pid, timeout=5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if not _running(pid):
                return True
            await asyncio.sleep(0.05)
        return not _running(pid)
    return wait
