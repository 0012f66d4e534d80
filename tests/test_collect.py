import pytest

from apk_merger import ROLE_BASE, ROLE_SECONDARY, collect_splits, stage_splits, workspace
from merge_errors import InvalidInput


def _touch(d, *names):
    d.mkdir(parents=True, exist_ok=True)
    for n in names:
        (d / n).write_bytes(b"PK")


def test_base_apk_goes_first(tmp_path):
    _touch(tmp_path, "split_config.xxhdpi.apk", "base.apk", "aaa.apk", "split_config.arm64_v8a.apk")
    comps = collect_splits(tmp_path)
    assert [c.file_name for c in comps] == [
        "base.apk", "aaa.apk", "split_config.arm64_v8a.apk", "split_config.xxhdpi.apk"]
    assert comps[0].role == ROLE_BASE
    assert all(c.role == ROLE_SECONDARY for c in comps[1:])


def test_lexicographic_first_is_base_without_base_apk(tmp_path):
    _touch(tmp_path, "zeta.apk", "app.apk", "mid.apk")
    comps = collect_splits(tmp_path)
    assert [c.file_name for c in comps] == ["app.apk", "mid.apk", "zeta.apk"]
    assert comps[0].is_base
    assert comps[0].tree_name == "app"


def test_non_archives_and_directories_are_ignored(tmp_path):
    _touch(tmp_path, "base.apk", "notes.txt", "base.apk.idsig")
    (tmp_path / "dir.apk").mkdir()
    assert [c.file_name for c in collect_splits(tmp_path)] == ["base.apk"]


def test_custom_extension(tmp_path):
    _touch(tmp_path, "base.zip", "x.apk")
    assert [c.file_name for c in collect_splits(tmp_path, ".zip")] == ["base.zip"]


def test_missing_directory(tmp_path):
    with pytest.raises(InvalidInput, match="does not exist"):
        collect_splits(tmp_path / "nope")


def test_file_instead_of_directory(tmp_path):
    f = tmp_path / "base.apk"
    f.write_bytes(b"PK")
    with pytest.raises(InvalidInput, match="not a directory"):
        collect_splits(f)


def test_no_archives(tmp_path):
    _touch(tmp_path, "readme.md")
    with pytest.raises(InvalidInput, match="no .apk files"):
        collect_splits(tmp_path)


def test_stage_copies_without_touching_input(tmp_path):
    src = tmp_path / "in"
    _touch(src, "base.apk", "split_a.apk")
    comps = collect_splits(src)
    with workspace(tmp_path / "work") as ws:
        stage_splits(src, comps, ws)
        assert sorted(p.name for p in ws.path.iterdir()) == ["base.apk", "split_a.apk"]
        (ws.path / "base.apk").unlink()
    assert sorted(p.name for p in src.iterdir()) == ["base.apk", "split_a.apk"]
