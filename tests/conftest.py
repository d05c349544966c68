import os
import stat
import sys
import textwrap
from pathlib import Path
from typing import List

import pytest

import audio_pipeline

FAKE_YT_DLP = """
import os
import sys
import time

args = sys.argv[1:]
url = args[-1]
open(os.path.join(os.environ["FAKE_PID_DIR"], "yt-dlp-%d.pid" % os.getpid()), "w").close()

if "--print" in args:
    if "notitle" in url:
        sys.stderr.write("ERROR: unable to extract title\\n")
        sys.exit(1)
    if "slowtitle" in url:
        sys.stderr.write("WARNING: still resolving title\\n")
        sys.stderr.flush()
        time.sleep(60)
    print(os.environ.get("FAKE_TITLE", "Hello / World"))
    sys.exit(0)

if args[:6] != ["--no-playlist", "-f", "bestaudio", "--no-warnings", "-o", "-"]:
    sys.stderr.write("unexpected arguments: %r\\n" % (args,))
    sys.exit(2)

out = sys.stdout.buffer
url = url.split("#", 1)[0]
if url == "stub://ok":
    out.write(b"AB CD")
elif url == "stub://big":
    out.write(b"x" * 200000)
elif url == "stub://broken":
    out.write(b"BROKEN")
elif url == "stub://midfail":
    out.write(b"y" * 10000)
    out.flush()
    sys.stderr.write("ERROR: connection reset mid-download\\n")
    sys.exit(1)
elif url == "stub://slow":
    time.sleep(60)
else:
    sys.stderr.write("ERROR: Unsupported URL: %s\\n" % url)
    sys.exit(1)
out.flush()
"""

FAKE_FFMPEG = """
import os
import sys

args = sys.argv[1:]
open(os.path.join(os.environ["FAKE_PID_DIR"], "ffmpeg-%d.pid" % os.getpid()), "w").close()

expected = ["-hide_banner", "-loglevel", "error", "-i", "pipe:0", "-ac", "1",
            "-ar", "16000", "-b:a", "32k", "-f", "mp3", "pipe:1"]
if args != expected:
    sys.stderr.write("unexpected arguments: %r\\n" % (args,))
    sys.exit(2)

first = True
broken = False
while True:
    chunk = os.read(0, 65536)
    if not chunk:
        break
    if first and chunk.startswith(b"BROKEN"):
        broken = True
    first = False
    if not broken:
        os.write(1, chunk)

if broken:
    sys.stderr.write("pipe:0: Invalid data found when processing input\\n")
    sys.exit(1)
"""


class FakeTools:
    def __init__(self, bin_dir: Path, pid_dir: Path) -> None:
        self.bin_dir = bin_dir
        self.pid_dir = pid_dir

    def pids(self, prefix: str = "") -> List[int]:
        return [
            int(path.stem.rsplit("-", 1)[1])
            for path in self.pid_dir.glob(f"{prefix}*.pid")
        ]

    def running(self) -> List[int]:
        alive = []
        for pid in self.pids():
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                continue
            alive.append(pid)
        return alive


def _write_script(path: Path, body: str) -> None:
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    pid_dir = tmp_path / "pids"
    bin_dir.mkdir()
    pid_dir.mkdir()
    _write_script(bin_dir / "yt-dlp", FAKE_YT_DLP)
    _write_script(bin_dir / "ffmpeg", FAKE_FFMPEG)

    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("FAKE_PID_DIR", str(pid_dir))
    monkeypatch.delenv("FAKE_TITLE", raising=False)
    monkeypatch.setattr(audio_pipeline, "YT_DLP_BIN", "yt-dlp")
    monkeypatch.setattr(audio_pipeline, "FFMPEG_BIN", "ffmpeg")
    return FakeTools(bin_dir, pid_dir)
