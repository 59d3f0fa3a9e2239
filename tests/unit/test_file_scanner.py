import pytest
from pathlib import Path
from clipfolio.infrastructure.file_scanner import FileScanner, stat_source, to_entry


def test_scan_finds_videos_recursively(library_dir, dummy_video_files):
    scanner = FileScanner([".mp4", ".mov"])

    entries = scanner.scan_all(library_dir)

    assert [e.relative_path for e in entries] == ["clip0.mp4", "clip1.mp4", "clip2.mp4", str(Path("trip") / "beach.mov")]
    beach = entries[-1]
    assert beach.name == "beach.mov"
    assert beach.folder_path == "trip"
    assert beach.size == len(b"dummy video content " * 100)
    assert entries[0].folder_path == ""


def test_scan_matches_extensions_case_insensitively(library_dir):
    (library_dir / "LOUD.MP4").write_bytes(b"x")
    scanner = FileScanner(["mp4"])

    assert [e.name for e in scanner.scan_all(library_dir)] == ["LOUD.MP4"]


def test_scan_missing_folder(tmp_path):
    with pytest.raises(FileNotFoundError):
        FileScanner([".mp4"]).scan_all(tmp_path / "missing")


def test_scan_file_instead_of_folder(tmp_path):
    f = tmp_path / "clip.mp4"
    f.write_bytes(b"x")
    with pytest.raises(NotADirectoryError):
        FileScanner([".mp4"]).scan_all(f)


def test_is_video():
    scanner = FileScanner([".mp4", ".mkv"])
    assert scanner.is_video(Path("a/b.MKV"))
    assert not scanner.is_video(Path("a/b.txt"))


def test_to_entry_without_root_uses_file_name(tmp_path):
    clip = tmp_path / "solo.mp4"
    clip.write_bytes(b"abc")

    entry = to_entry(stat_source(clip), None)

    assert entry.relative_path == "solo.mp4"
    assert entry.folder_path == ""
    assert entry.size == 3


def test_to_entry_outside_root_falls_back_to_name(tmp_path):
    clip = tmp_path / "solo.mp4"
    clip.write_bytes(b"abc")

    entry = to_entry(stat_source(clip), tmp_path / "elsewhere")

    assert entry.relative_path == "solo.mp4"
