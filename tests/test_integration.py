"""End-to-end mirroring through real native notifications."""

import os
import shutil
import stat

import pytest

from helpers import content_is, mode_of, read

TIMEOUT = 10


@pytest.fixture
def mirror(dirs, make_watcher):
    source, target = dirs
    watcher = make_watcher()
    return watcher, source, target


class TestFiles:
    def test_new_file_is_copied(self, mirror, wait_for):
        _, source, target = mirror
        (source / "test.txt").write_text("Test")

        assert wait_for(content_is(target / "test.txt", "Test"), TIMEOUT)

    def test_modified_file_is_copied_again(self, mirror, wait_for):
        _, source, target = mirror
        (source / "notes.txt").write_text("one")
        assert wait_for(content_is(target / "notes.txt", "one"), TIMEOUT)

        (source / "notes.txt").write_text("two, longer")

        assert wait_for(content_is(target / "notes.txt", "two, longer"), TIMEOUT)

    def test_deleted_file_is_removed(self, dirs, make_watcher, wait_for):
        source, target = dirs
        (source / "a" / "b").mkdir(parents=True)
        (source / "a" / "b" / "Testfile").write_text("x")
        (target / "a" / "b").mkdir(parents=True)
        (target / "a" / "b" / "Testfile").write_text("x")
        watcher = make_watcher()
        assert watcher.wait_idle(TIMEOUT)

        os.remove(source / "a" / "b" / "Testfile")

        assert wait_for(lambda: not (target / "a" / "b" / "Testfile").exists(), TIMEOUT)
        assert (target / "a" / "b").is_dir()

    def test_renamed_file_moves_in_destination(self, dirs, make_watcher, wait_for):
        source, target = dirs
        (source / "a" / "b").mkdir(parents=True)
        (source / "a" / "b" / "file").write_text("payload")
        watcher = make_watcher()
        assert wait_for(content_is(target / "a" / "b" / "file", "payload"), TIMEOUT)
        assert watcher.wait_idle(TIMEOUT)

        os.rename(source / "a" / "b" / "file", source / "a" / "file2")

        assert wait_for(content_is(target / "a" / "file2", "payload"), TIMEOUT)
        assert wait_for(lambda: not (target / "a" / "b" / "file").exists(), TIMEOUT)

    def test_symlink_is_reproduced(self, mirror, wait_for):
        _, source, target = mirror
        os.symlink("somewhere/else", source / "link")

        assert wait_for(lambda: os.path.islink(target / "link"), TIMEOUT)
        assert os.readlink(target / "link") == "somewhere/else"

    def test_file_mode_change(self, mirror, wait_for):
        _, source, target = mirror
        (source / "secret").write_text("s")
        assert wait_for(content_is(target / "secret", "s"), TIMEOUT)

        os.chmod(source / "secret", 0o600)

        assert wait_for(lambda: mode_of(target / "secret") == 0o600, TIMEOUT)

    def test_ignored_files_are_not_copied(self, mirror, wait_for):
        watcher, source, target = mirror
        (source / ".hidden").write_text("h")
        (source / "visible").write_text("v")

        assert wait_for(content_is(target / "visible", "v"), TIMEOUT)
        assert watcher.wait_idle(TIMEOUT)
        assert not (target / ".hidden").exists()


class TestDirectories:
    def test_initial_sync_of_existing_content(self, dirs, make_watcher, wait_for):
        source, target = dirs
        (source / "docs" / "deep").mkdir(parents=True)
        (source / "docs" / "deep" / "file.txt").write_text("deep")
        (source / "top.txt").write_text("top")

        make_watcher()

        assert wait_for(content_is(target / "docs" / "deep" / "file.txt", "deep"), TIMEOUT)
        assert read(target / "top.txt") == "top"

    def test_nested_directories_created_in_a_burst(self, mirror, wait_for):
        _, source, target = mirror
        os.makedirs(source / "x" / "y" / "z")
        (source / "x" / "y" / "z" / "leaf.txt").write_text("leaf")

        assert wait_for(content_is(target / "x" / "y" / "z" / "leaf.txt", "leaf"), TIMEOUT)

    def test_directory_renamed_into_place(self, dirs, tmp_path, make_watcher, wait_for):
        source, target = dirs
        staging = tmp_path.resolve() / "staging"
        (staging / "inner").mkdir(parents=True)
        (staging / "inner" / "a.txt").write_text("a")
        (staging / "b.txt").write_text("b")
        make_watcher()

        shutil.move(str(staging), str(source / "album"))

        assert wait_for(content_is(target / "album" / "inner" / "a.txt", "a"), TIMEOUT)
        assert wait_for(content_is(target / "album" / "b.txt", "b"), TIMEOUT)

    def test_files_in_new_directory_are_watched(self, mirror, wait_for):
        watcher, source, target = mirror
        (source / "later").mkdir()
        assert wait_for(lambda: (target / "later").is_dir(), TIMEOUT)
        assert watcher.wait_idle(TIMEOUT)

        (source / "later" / "file.txt").write_text("later")

        assert wait_for(content_is(target / "later" / "file.txt", "later"), TIMEOUT)

    def test_removed_directory_is_removed(self, dirs, make_watcher, wait_for):
        source, target = dirs
        (source / "gone" / "sub").mkdir(parents=True)
        (source / "gone" / "sub" / "f").write_text("f")
        watcher = make_watcher()
        assert wait_for(content_is(target / "gone" / "sub" / "f", "f"), TIMEOUT)
        assert watcher.wait_idle(TIMEOUT)

        shutil.rmtree(source / "gone")

        assert wait_for(lambda: not (target / "gone").exists(), TIMEOUT)

    def test_directory_mode_change(self, mirror, wait_for):
        _, source, target = mirror
        (source / "private").mkdir()
        assert wait_for(lambda: (target / "private").is_dir(), TIMEOUT)

        os.chmod(source / "private", 0o700)

        assert wait_for(lambda: mode_of(target / "private") == 0o700, TIMEOUT)

    def test_new_directory_keeps_mode(self, mirror, wait_for):
        _, source, target = mirror
        (source / "restricted").mkdir(mode=0o750)
        os.chmod(source / "restricted", 0o750)

        assert wait_for(lambda: (target / "restricted").is_dir(), TIMEOUT)
        assert wait_for(lambda: mode_of(target / "restricted") == 0o750, TIMEOUT)

    def test_root_removed_and_recreated(self, mirror, wait_for):
        _, source, target = mirror
        (source / "old.txt").write_text("old")
        assert wait_for(content_is(target / "old.txt", "old"), TIMEOUT)

        shutil.rmtree(source)
        assert wait_for(lambda: not target.exists(), TIMEOUT)

        source.mkdir()
        assert wait_for(lambda: target.is_dir(), TIMEOUT)
        (source / "new.txt").write_text("new")

        assert wait_for(content_is(target / "new.txt", "new"), TIMEOUT)
        assert not (target / "old.txt").exists()


class TestMultipleDestinations:
    def test_every_destination_is_updated(self, tmp_path, make_watcher, wait_for):
        from libraries_watcher.config import Library

        root = tmp_path.resolve()
        source = root / "multi-src"
        source.mkdir()
        first, second = root / "d1", root / "d2"
        library = Library(name="multi", source=str(source), destinations=(str(first), str(second)))
        make_watcher([library])

        (source / "shared.txt").write_text("shared")

        assert wait_for(content_is(first / "shared.txt", "shared"), TIMEOUT)
        assert wait_for(content_is(second / "shared.txt", "shared"), TIMEOUT)
        assert stat.S_ISDIR(os.lstat(first).st_mode)

    def test_destination_inside_source_is_not_mirrored_into_itself(
        self, tmp_path, make_watcher, wait_for
    ):
        from libraries_watcher.config import Library

        source = tmp_path.resolve() / "nested-src"
        source.mkdir()
        mirror_dir = source / "mirror"
        library = Library(name="nested", source=str(source), destinations=(str(mirror_dir),))
        watcher = make_watcher([library])

        (source / "a.txt").write_text("a")

        assert wait_for(content_is(mirror_dir / "a.txt", "a"), TIMEOUT)
        assert watcher.wait_idle(TIMEOUT)
        assert not (mirror_dir / "mirror").exists()
