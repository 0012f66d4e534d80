"""
apk_merger.py  ─  split APKs → one installable APK
═══════════════════════════════════════════════════════════════════════════════
Play-delivered apps arrive as base.apk + split_config.*.apk. None of them
installs on its own, and `adb install` of the base alone fails with
INSTALL_FAILED_MISSING_SPLIT. This module rebuilds a single standalone APK.

PIPELINE (one workspace per request, removed on every exit path):
  ① collect   list *.apk, sort, base.apk first, copy into the workspace
  ② unpack    apktool decode -s <split>.apk  → <split>/   (archive deleted)
  ③ merge     assets/ lib/ res/ unknown/ kotlin/ of every secondary
              → base tree, first-seen file wins, collector order
  ④ strip     stale original/META-INF signatures of the base
  ⑤ sanitize  AndroidManifest.xml: drop split-required markers
  ⑥ config    union of every apktool.yml doNotCompress list → base
  ⑦ repack    apktool build base  → base/dist/base.apk
  ⑧ align     zipalign -p -f 4 (hard failure, never skipped)
  ⑨ publish   copy to the destination via a temp sibling + rename

The base tree is the only mutable accumulator. Secondary trees are read,
never written, and vanish with the workspace.
"""

import os
import re
import shutil
import subprocess
import tempfile
import time
import uuid
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Mapping, Optional, Sequence, Tuple, Type

from merge_errors import (
    AlignFailure,
    InvalidInput,
    MergeError,
    RepackFailure,
    RepackOutputMissing,
    UnpackFailure,
)
from tool_resolver import (
    APKTOOL,
    ZIPALIGN,
    DEFAULT_APKTOOL_JAR_URL,
    SubprocessToolRunner,
    ToolResolver,
    ToolResult,
    ToolRunner,
)

log = logging.getLogger(__name__)

EXT_APK = ".apk"
BASE_NAME = "base"
ROLE_BASE = "base"
ROLE_SECONDARY = "secondary"

MANIFEST_FILE = "AndroidManifest.xml"
APKTOOL_CONFIG = "apktool.yml"
DIST_DIR = "dist"

# Only these subtrees differ between splits; code lives in the base alone.
MERGEABLE_DIRS = ("assets", "lib", "res", "unknown", "kotlin")

ProgressSink = Callable[[str, str], None]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Settings
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
_TRUTHY = {"1", "true", "yes", "on"}


def _default_tools_dir() -> Path:
    return Path.home() / ".cache" / "apkmerge"


@dataclass
class MergeSettings:
    work_root: Optional[Path] = None
    tools_dir: Path = field(default_factory=_default_tools_dir)
    apktool: Optional[str] = None
    zipalign: Optional[str] = None
    apktool_jar_url: str = DEFAULT_APKTOOL_JAR_URL
    tool_timeout: Optional[float] = None
    parallel_unpack: bool = False
    max_workers: int = 4
    archive_ext: str = EXT_APK
    strip_signatures: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MergeSettings":
        env = os.environ if environ is None else environ
        s = cls()
        if env.get("APKMERGE_WORK_ROOT"):
            s.work_root = Path(env["APKMERGE_WORK_ROOT"]).expanduser()
        if env.get("APKMERGE_TOOLS_DIR"):
            s.tools_dir = Path(env["APKMERGE_TOOLS_DIR"]).expanduser()
        s.apktool = env.get("APKTOOL") or None
        s.zipalign = env.get("ZIPALIGN") or None
        if env.get("APKTOOL_JAR_URL"):
            s.apktool_jar_url = env["APKTOOL_JAR_URL"]
        if env.get("APKMERGE_TOOL_TIMEOUT"):
            try:
                s.tool_timeout = float(env["APKMERGE_TOOL_TIMEOUT"])
            except ValueError:
                raise InvalidInput(f"APKMERGE_TOOL_TIMEOUT is not a number: {env['APKMERGE_TOOL_TIMEOUT']!r}") from None
        if env.get("APKMERGE_PARALLEL_UNPACK"):
            s.parallel_unpack = env["APKMERGE_PARALLEL_UNPACK"].strip().lower() in _TRUTHY
        return s

    def resolver(self) -> ToolResolver:
        return ToolResolver(tools_dir=self.tools_dir,
                            apktool=self.apktool,
                            zipalign=self.zipalign,
                            apktool_jar_url=self.apktool_jar_url)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Progress channel
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class ProgressReporter:
    """Logs `[request_id] message` and forwards it to an optional sink."""

    def __init__(self, request_id: str, sink: Optional[ProgressSink] = None):
        self.request_id = request_id
        self.sink = sink

    def __call__(self, message: str) -> None:
        log.info("[%s] %s", self.request_id, message)
        if self.sink is None:
            return
        try:
            self.sink(self.request_id, message)
        except Exception as exc:
            log.warning("[%s] progress sink failed: %s", self.request_id, exc)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ①  Workspace
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass
class Workspace:
    path: Path
    released: bool = False


def acquire_workspace(root: Optional[Path] = None) -> Workspace:
    if root is not None:
        Path(root).mkdir(parents=True, exist_ok=True)
    prefix = f"merge-apk-{int(time.time() * 1000)}-"
    return Workspace(Path(tempfile.mkdtemp(prefix=prefix, dir=str(root) if root else None)))


def release_workspace(ws: Workspace) -> None:
    """Remove the workspace. Never raises: a failed cleanup must not mask the merge result."""
    if ws.released:
        return
    ws.released = True
    try:
        shutil.rmtree(ws.path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.warning("could not remove workspace %s: %s", ws.path, exc)


@contextmanager
def workspace(root: Optional[Path] = None) -> Iterator[Workspace]:
    ws = acquire_workspace(root)
    try:
        yield ws
    finally:
        release_workspace(ws)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ②  Input collection
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass
class SplitComponent:
    file_name: str
    role: str
    unpacked_tree_path: Optional[Path] = None

    @property
    def tree_name(self) -> str:
        # apktool names the decoded directory after the archive minus its extension
        return Path(self.file_name).stem

    @property
    def is_base(self) -> bool:
        return self.role == ROLE_BASE


def collect_splits(input_dir: Path, ext: str = EXT_APK) -> List[SplitComponent]:
    """
    Ordered split list: base first, secondaries in lexicographic order.
    `base<ext>` is the base when present, otherwise the lexicographically
    first archive is.
    """
    input_dir = Path(input_dir)
    if not input_dir.exists():
        raise InvalidInput(f"input directory does not exist: {input_dir}")
    if not input_dir.is_dir():
        raise InvalidInput(f"input path is not a directory: {input_dir}")

    names = sorted(p.name for p in input_dir.iterdir() if p.is_file() and p.name.endswith(ext))
    if not names:
        raise InvalidInput(f"no {ext} files found in {input_dir}")

    base_file = BASE_NAME + ext
    if base_file in names:
        names.remove(base_file)
        names.insert(0, base_file)

    return [SplitComponent(name, ROLE_BASE if i == 0 else ROLE_SECONDARY)
            for i, name in enumerate(names)]


def stage_splits(input_dir: Path, components: Sequence[SplitComponent], ws: Workspace) -> None:
    """Copy every split into the workspace; the input directory is never touched again."""
    for comp in components:
        shutil.copyfile(Path(input_dir) / comp.file_name, ws.path / comp.file_name)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ③  apktool / zipalign driver
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _invoke(runner: ToolRunner, tool: str, args: Sequence[str], cwd: Path,
            failure: Type[MergeError], what: str) -> ToolResult:
    try:
        r = runner.run(tool, args, cwd)
    except subprocess.TimeoutExpired as exc:
        raise failure(f"{what} timed out after {exc.timeout}s", None, _as_text(exc.output)) from exc
    if not r.ok:
        raise failure(f"{what} failed", r.exit_code, r.output)
    return r


def unpack(runner: ToolRunner, ws: Workspace, comp: SplitComponent) -> Path:
    archive = ws.path / comp.file_name
    _invoke(runner, APKTOOL, ["decode", "-s", comp.file_name], ws.path,
            UnpackFailure, f"unpacking {comp.file_name}")
    tree = ws.path / comp.tree_name
    if not tree.is_dir():
        raise UnpackFailure(f"unpacking {comp.file_name} produced no {comp.tree_name}/ tree", 0)
    # decoded trees dwarf their archive; the archive is never read again
    archive.unlink(missing_ok=True)
    comp.unpacked_tree_path = tree
    return tree


def locate_build_output(dist: Path, tree_name: str, ext: str = EXT_APK) -> Path:
    """
    apktool writes dist/<tree><ext>. That name wins; otherwise exactly one
    file must be present. Several candidates without the conventional name
    are rejected rather than picked by listing order.
    """
    files = sorted(p for p in dist.iterdir() if p.is_file()) if dist.is_dir() else []
    if not files:
        raise RepackOutputMissing(f"no built archive in {dist}")
    preferred = dist / (tree_name + ext)
    if preferred.is_file():
        return preferred
    if len(files) == 1:
        return files[0]
    raise RepackFailure(f"ambiguous build output in {dist}: {', '.join(p.name for p in files)}")


def repack(runner: ToolRunner, ws: Workspace, tree_name: str, ext: str = EXT_APK) -> Path:
    _invoke(runner, APKTOOL, ["build", tree_name], ws.path, RepackFailure, f"building {tree_name}")
    return locate_build_output(ws.path / tree_name / DIST_DIR, tree_name, ext)


def align(runner: ToolRunner, archive: Path) -> None:
    """zipalign into a sibling, then replace the original."""
    tmp = archive.with_name(f"aligned_{archive.name}")
    tmp.unlink(missing_ok=True)
    try:
        _invoke(runner, ZIPALIGN, ["-p", "-f", "4", str(archive), str(tmp)], archive.parent,
                AlignFailure, f"aligning {archive.name}")
        if not tmp.is_file():
            raise AlignFailure(f"aligning {archive.name} produced no output", 0)
    except MergeError:
        tmp.unlink(missing_ok=True)
        raise
    os.replace(tmp, archive)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ④  Tree merge
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def merge_dir_contents(src: Path, dst: Path) -> int:
    """
    Copy files from src into dst that dst does not have yet.
    Existing entries are left alone, silently. Returns the number of files copied.
    """
    if dst.exists() and not dst.is_dir():
        return 0
    dst.mkdir(parents=True, exist_ok=True)
    copied = 0
    for entry in sorted(src.iterdir()):
        target = dst / entry.name
        if entry.is_dir():
            copied += merge_dir_contents(entry, target)
        elif not target.exists():
            shutil.copy2(entry, target)
            copied += 1
    return copied


def merge_trees(base_tree: Path, secondary_tree: Path) -> int:
    copied = 0
    for name in MERGEABLE_DIRS:
        src = secondary_tree / name
        if src.is_dir():
            copied += merge_dir_contents(src, base_tree / name)
    return copied


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ⑤  Signatures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
_SIGNATURE_SUFFIXES = (".RSA", ".SF", ".DSA", ".EC")


def strip_signatures(tree: Path) -> List[str]:
    """Delete the split's signing files from original/META-INF; they no longer match."""
    meta_inf = tree / "original" / "META-INF"
    if not meta_inf.is_dir():
        return []
    removed = []
    for f in sorted(meta_inf.iterdir()):
        if f.is_file() and (f.suffix.upper() in _SIGNATURE_SUFFIXES or f.name == "MANIFEST.MF"):
            f.unlink()
            removed.append(f.name)
    return removed


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ⑥  Manifest
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Text substitutions, not an XML round-trip. Patterns are disjoint.
MANIFEST_REWRITES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'\s+android:isSplitRequired="true"(?=[\s/>])'), ""),
    (re.compile(r'\s*<meta-data android:name="com\.android\.vending\.splits\.required" '
                r'android:value="true"\s*/>'), ""),
    (re.compile(r'\s*<meta-data android:name="com\.android\.vending\.splits" '
                r'android:resource="@xml/splits\d*"\s*/>'), ""),
    (re.compile(r'android:value="STAMP_TYPE_DISTRIBUTION_APK"'),
     'android:value="STAMP_TYPE_STANDALONE_APK"'),
]


def sanitize_manifest_text(text: str) -> Tuple[str, int]:
    total = 0
    for pattern, repl in MANIFEST_REWRITES:
        text, n = pattern.subn(repl, text)
        total += n
    return text, total


def sanitize_manifest(manifest: Path) -> int:
    """Rewrite the manifest in place. Returns the number of substitutions; 0 if absent."""
    if not manifest.is_file():
        return 0
    with open(manifest, "r", encoding="utf-8", newline="") as f:
        original = f.read()
    text, n = sanitize_manifest_text(original)
    if text != original:
        with open(manifest, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    return n


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ⑦  apktool.yml doNotCompress
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
DNC_KEY = "doNotCompress:"
DNC_ITEM = "- "


def find_do_not_compress(lines: Sequence[str]) -> Tuple[List[str], int, int]:
    """
    Scan for the doNotCompress block.
    Returns (item lines verbatim, first item index, last item index);
    indices are -1 when there is no item. Blank and comment lines do not
    end the block, any other line does.
    """
    items: List[str] = []
    start = end = -1
    inside = False
    for i, line in enumerate(lines):
        stripped = line.strip()
        if not inside:
            if stripped.startswith(DNC_KEY):
                inside = True
            continue
        if stripped.startswith(DNC_ITEM):
            if start == -1:
                start = i
            end = i
            items.append(line)
        elif stripped and not stripped.startswith("#"):
            break
    return items, start, end


def merge_do_not_compress(secondary_lines: Sequence[str],
                          base_lines: Sequence[str]) -> Tuple[List[str], int, int]:
    """
    Pure merge. Returns (new base lines, items added, items dropped).
    Items are dropped only when the base has no item range to splice into.
    """
    sec_items, _, _ = find_do_not_compress(secondary_lines)
    lines = list(base_lines)
    if not sec_items:
        return lines, 0, 0
    base_items, start, end = find_do_not_compress(lines)
    if start == -1:
        return lines, 0, len(set(sec_items))
    merged = sorted(set(base_items) | set(sec_items))
    lines[start:end + 1] = merged
    return lines, len(merged) - len(set(base_items)), 0


def _split_lines(text: str) -> List[str]:
    # CRLF and LF files must yield identical item lines
    return [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]


def merge_config(secondary_config: Path, base_config: Path) -> int:
    """Fold the secondary's doNotCompress entries into the base apktool.yml."""
    if not secondary_config.is_file() or not base_config.is_file():
        return 0
    with open(secondary_config, "r", encoding="utf-8", newline="") as f:
        sec_lines = _split_lines(f.read())
    with open(base_config, "r", encoding="utf-8", newline="") as f:
        original = f.read()
    lines, added, dropped = merge_do_not_compress(sec_lines, _split_lines(original))
    if dropped:
        # the base layout is authoritative; never invent a block in it
        log.warning("%s has no doNotCompress items to extend; dropped %d entr%s from %s",
                    base_config, dropped, "y" if dropped == 1 else "ies", secondary_config)
        return 0
    text = ("\r\n" if "\r\n" in original else "\n").join(lines)
    if text != original:
        with open(base_config, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    return added


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ⑧  Publish
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def publish(built: Path, output_path: Path) -> Path:
    """Copy next to the destination, then rename over it: all or nothing."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{output_path.name}.", suffix=".part",
                                    dir=str(output_path.parent))
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        shutil.copyfile(built, tmp)
        os.replace(tmp, output_path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    return output_path


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Orchestrator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class SplitMerger:
    """
    Runs the whole pipeline for one request at a time per call. Separate
    calls share nothing but the settings, so concurrent merges are safe.
    """

    def __init__(self,
                 settings: Optional[MergeSettings] = None,
                 runner: Optional[ToolRunner] = None,
                 progress: Optional[ProgressSink] = None):
        self.settings = settings or MergeSettings()
        self.runner = runner or SubprocessToolRunner(self.settings.resolver(),
                                                     timeout=self.settings.tool_timeout)
        self.progress = progress

    def merge(self, input_dir, output_path, request_id: Optional[str] = None) -> Path:
        request_id = request_id or uuid.uuid4().hex[:8]
        say = ProgressReporter(request_id, self.progress)
        input_dir, output_path = Path(input_dir), Path(output_path)
        if output_path.is_dir():
            raise InvalidInput(f"output path is a directory: {output_path}")

        with workspace(self.settings.work_root) as ws:
            say(f"workspace: {ws.path}")
            try:
                built = self._build(ws, input_dir, say)
                result = publish(built, output_path)
            except MergeError as exc:
                say(f"merge failed: {exc}")
                raise
        say(f"merged APK saved to {result}")
        return result

    def _build(self, ws: Workspace, input_dir: Path, say: ProgressReporter) -> Path:
        ext = self.settings.archive_ext
        components = collect_splits(input_dir, ext)
        base, secondaries = components[0], components[1:]
        say(f"found {len(components)} split(s), base: {base.file_name}")
        stage_splits(input_dir, components, ws)

        self._unpack_all(ws, components, say)

        base_tree = base.unpacked_tree_path
        for i, sec in enumerate(secondaries, 1):
            copied = merge_trees(base_tree, sec.unpacked_tree_path)
            say(f"merged {sec.file_name} ({i}/{len(secondaries)}): {copied} file(s) added")

        if self.settings.strip_signatures:
            removed = strip_signatures(base_tree)
            if removed:
                say(f"removed stale signature files: {', '.join(removed)}")

        n = sanitize_manifest(base_tree / MANIFEST_FILE)
        say(f"manifest sanitized ({n} rewrite(s))")

        for sec in secondaries:
            added = merge_config(sec.unpacked_tree_path / APKTOOL_CONFIG, base_tree / APKTOOL_CONFIG)
            if added:
                say(f"doNotCompress: +{added} from {sec.file_name}")

        say("repacking APK...")
        built = repack(self.runner, ws, base.tree_name, ext)
        say("zipaligning APK...")
        align(self.runner, built)
        return built

    def _unpack_all(self, ws: Workspace, components: List[SplitComponent], say: ProgressReporter) -> None:
        total = len(components)

        def one(indexed: Tuple[int, SplitComponent]) -> Path:
            i, comp = indexed
            say(f"unpacking {i} of {total}: {comp.file_name}")
            return unpack(self.runner, ws, comp)

        jobs = list(enumerate(components, 1))
        if self.settings.parallel_unpack and total > 1:
            workers = max(1, min(total, self.settings.max_workers))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                # each split decodes into its own directory; results come back in order
                list(pool.map(one, jobs))
        else:
            for job in jobs:
                one(job)


def merge_apks(input_dir, output_path,
               settings: Optional[MergeSettings] = None,
               runner: Optional[ToolRunner] = None,
               progress: Optional[ProgressSink] = None,
               request_id: Optional[str] = None) -> Path:
    return SplitMerger(settings, runner, progress).merge(input_dir, output_path, request_id)
