import shutil
import subprocess
import zipfile
from pathlib import Path

import pytest

from tool_resolver import ToolResult, ToolRunner


def write_apk(path: Path, files: dict) -> Path:
    """Create a zip standing in for an APK. `files` maps archive names to str/bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return path


class FakeToolRunner(ToolRunner):
    """
    Stands in for apktool and zipalign:
      decode  extracts the zip into <stem>/
      build   zips <tree>/ (minus dist/) into <tree>/dist/<tree>.apk
      align   copies input to output
    `fail` maps an operation ("decode", "build", "align") to an exit code,
    `timeout` names an operation that raises TimeoutExpired.
    """

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.timeout = None
        self.build_outputs = None

    def run(self, tool, args, cwd=None):
        args = [str(a) for a in args]
        self.calls.append((tool, args, Path(cwd) if cwd else None))
        op = {"decode": "decode", "build": "build"}.get(args[0], "align") if tool == "apktool" else "align"
        if self.timeout == op:
            raise subprocess.TimeoutExpired([tool] + args, 5, output=b"partial output")
        if op in self.fail:
            return ToolResult(self.fail[op], f"{op} exploded")
        return getattr(self, "_" + op)(args, Path(cwd))

    def _decode(self, args, cwd):
        archive = cwd / args[-1]
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(cwd / archive.stem)
        return ToolResult(0, f"I: decoding {archive.name}")

    def _build(self, args, cwd):
        tree = cwd / args[-1]
        dist = tree / "dist"
        dist.mkdir(exist_ok=True)
        names = self.build_outputs if self.build_outputs is not None else [tree.name + ".apk"]
        for name in names:
            with zipfile.ZipFile(dist / name, "w") as zf:
                for f in sorted(tree.rglob("*")):
                    if f.is_file() and dist not in f.parents:
                        zf.write(f, f.relative_to(tree).as_posix())
        return ToolResult(0, "I: built")

    def _align(self, args, cwd):
        src, dst = Path(args[-2]), Path(args[-1])
        shutil.copyfile(src, dst)
        return ToolResult(0, "Verification successful")

    def ops(self):
        return [(tool, args[0]) for tool, args, _ in self.calls]


@pytest.fixture
def fake_runner():
    return FakeToolRunner()


@pytest.fixture
def make_apk():
    return write_apk
