"""
tool_resolver.py  ─  external tool layer for the split-APK merger
═══════════════════════════════════════════════════════════════════
Every byte-level operation (decode, build, align) is delegated to an
independently versioned binary. The merger only ever talks to them through
a ToolRunner:

    run(tool, args, cwd) -> ToolResult(exit_code, output)

  tool     logical name: "apktool" | "zipalign"
  output   stdout + stderr, interleaved

SubprocessToolRunner is the real thing; tests plug in a fake.

Lookup order per tool:
  apktool   explicit path → PATH → java -jar <tools_dir>/apktool.jar
            (jar fetched with requests when missing)
  zipalign  explicit path → PATH → $ANDROID_HOME/build-tools/<newest>/zipalign
"""

import os
import shutil
import subprocess
import tempfile
import threading
import time
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass

import requests

from merge_errors import ToolNotFound

log = logging.getLogger(__name__)

APKTOOL = "apktool"
ZIPALIGN = "zipalign"

APKTOOL_JAR_NAME = "apktool.jar"
DEFAULT_APKTOOL_JAR_URL = "https://bitbucket.org/iBotPeaches/apktool/downloads/apktool_2.9.3.jar"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Runner interface
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass
class ToolResult:
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ToolRunner:
    """Narrow seam between the merge pipeline and the outside world."""

    def run(self, tool: str, args: Sequence[str], cwd: Optional[Path] = None) -> ToolResult:
        raise NotImplementedError


class SubprocessToolRunner(ToolRunner):
    """
    Runs resolved tools as blocking subprocesses.
    `timeout` (seconds) bounds every call; subprocess.TimeoutExpired is left
    to propagate so the caller can report it as its own failure kind.
    """

    def __init__(self, resolver: "ToolResolver", timeout: Optional[float] = None):
        self.resolver = resolver
        self.timeout = timeout

    def run(self, tool: str, args: Sequence[str], cwd: Optional[Path] = None) -> ToolResult:
        cmd = self.resolver.command(tool) + [str(a) for a in args]
        log.debug("exec (cwd=%s): %s", cwd, " ".join(cmd))
        try:
            r = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ToolNotFound(tool, str(exc)) from exc
        return ToolResult(r.returncode, r.stdout or "")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Lookup
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def find_zipalign(explicit: Optional[str] = None) -> Optional[str]:
    if explicit:
        return explicit if Path(explicit).exists() else None
    found = shutil.which(ZIPALIGN)
    if found:
        return found
    for env in ("ANDROID_HOME", "ANDROID_SDK_ROOT"):
        sdk = os.environ.get(env)
        if not sdk:
            continue
        for p in sorted(Path(sdk).glob("build-tools/*/zipalign"), reverse=True):
            if p.exists():
                return str(p)
    return None


def download_file(url: str, dst: Path, max_retries: int = 3, timeout: float = 60) -> Path:
    """
    Stream `url` into `dst`. Each attempt writes to its own temp sibling and
    renames on completion, so an interrupted transfer never leaves a
    truncated file at `dst` and concurrent downloads never share a file.
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    last_exc: Optional[Exception] = None
    for attempt in range(max_retries):
        fd, part_name = tempfile.mkstemp(prefix=f".{dst.name}.", suffix=".part", dir=str(dst.parent))
        part = Path(part_name)
        try:
            with os.fdopen(fd, "wb") as f, requests.get(url, stream=True, timeout=timeout) as r:
                r.raise_for_status()
                for chunk in r.iter_content(chunk_size=1 << 16):
                    if chunk:
                        f.write(chunk)
            os.replace(part, dst)
            return dst
        except requests.RequestException as exc:
            last_exc = exc
            log.warning("download %s failed (attempt %d/%d): %s", url, attempt + 1, max_retries, exc)
            if attempt < max_retries - 1:
                time.sleep(2 * (attempt + 1))
        finally:
            part.unlink(missing_ok=True)
    raise ToolNotFound(APKTOOL, f"download of {url} failed: {last_exc}")


class ToolResolver:
    """Maps logical tool names to argv prefixes. Results are cached per instance."""

    def __init__(self,
                 tools_dir: Path,
                 apktool: Optional[str] = None,
                 zipalign: Optional[str] = None,
                 apktool_jar_url: str = DEFAULT_APKTOOL_JAR_URL,
                 allow_download: bool = True):
        self.tools_dir = Path(tools_dir)
        self.apktool = apktool
        self.zipalign = zipalign
        self.apktool_jar_url = apktool_jar_url
        self.allow_download = allow_download
        self._cache: Dict[str, List[str]] = {}
        # parallel unpack threads share one resolver; only one may fetch the jar
        self._lock = threading.Lock()

    def command(self, tool: str) -> List[str]:
        with self._lock:
            if tool not in self._cache:
                if tool == APKTOOL:
                    self._cache[tool] = self._resolve_apktool()
                elif tool == ZIPALIGN:
                    self._cache[tool] = self._resolve_zipalign()
                else:
                    raise ToolNotFound(tool, "unknown tool")
            return list(self._cache[tool])

    def _resolve_zipalign(self) -> List[str]:
        za = find_zipalign(self.zipalign)
        if not za:
            raise ToolNotFound(ZIPALIGN, "install Android build-tools or set ZIPALIGN")
        return [za]

    def _resolve_apktool(self) -> List[str]:
        if self.apktool:
            if self.apktool.endswith(".jar"):
                return self._java_jar(Path(self.apktool))
            return [self.apktool]
        found = shutil.which(APKTOOL)
        if found:
            return [found]
        jar = self.tools_dir / APKTOOL_JAR_NAME
        if not jar.exists():
            if not self.allow_download:
                raise ToolNotFound(APKTOOL, f"not on PATH and {jar} is missing")
            log.info("apktool not on PATH, fetching %s", self.apktool_jar_url)
            download_file(self.apktool_jar_url, jar)
            log.info("apktool downloaded to %s", jar)
        return self._java_jar(jar)

    @staticmethod
    def _java_jar(jar: Path) -> List[str]:
        java = shutil.which("java")
        if not java:
            raise ToolNotFound("java", f"needed to run {jar.name}")
        return [java, "-jar", str(jar)]


def check_tools(resolver: ToolResolver) -> Dict[str, Optional[str]]:
    """Resolve every tool once. Returns {tool: command or None}."""
    report: Dict[str, Optional[str]] = {}
    for tool in (APKTOOL, ZIPALIGN):
        try:
            report[tool] = " ".join(resolver.command(tool))
        except ToolNotFound as exc:
            log.warning("%s", exc)
            report[tool] = None
    return report
