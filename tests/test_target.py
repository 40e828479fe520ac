"""Target classification, directory listing and startup assembly tests."""

from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import boar


class ClassifyTargetTests(unittest.TestCase):
    def test_directory_and_file_are_told_apart(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            report = root / "report.pdf"
            report.write_bytes(b"%PDF")

            self.assertIs(boar.classify_target(root), boar.TargetKind.DIRECTORY)
            self.assertIs(boar.classify_target(report), boar.TargetKind.FILE)

    def test_missing_path_raises_target_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            missing = Path(tmp) / "nope"
            with self.assertRaises(boar.TargetError) as ctx:
                boar.classify_target(missing)
            self.assertEqual(ctx.exception.path, missing)
            self.assertIsInstance(ctx.exception.__cause__, FileNotFoundError)

    def test_empty_path_raises_target_error(self) -> None:
        with self.assertRaises(boar.TargetError):
            boar.classify_target("")

    def test_describe_file_reads_size(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            report = Path(tmp).resolve() / "report.pdf"
            report.write_bytes(b"x" * 2048)

            descriptor = boar.describe_file(report)

            self.assertEqual(descriptor, boar.FileDescriptor(path=report, name="report.pdf", size=2048))


class ListDirectoryTests(unittest.TestCase):
    def test_lists_regular_files_with_sizes_and_skips_subdirectories(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            (root / "a.txt").write_bytes(b"12345")
            (root / "b.txt").write_bytes(b"0123456789")
            (root / "nested").mkdir()
            (root / "nested" / "inner.txt").write_text("inner", encoding="utf-8")

            files = boar.list_directory(root)

            self.assertEqual(len(files), 2)
            by_name = {f.name: f for f in files}
            self.assertEqual(by_name["a.txt"].size, 5)
            self.assertEqual(by_name["b.txt"].size, 10)
            self.assertEqual(by_name["a.txt"].path, root / "a.txt")
            self.assertNotIn("nested", by_name)

    def test_empty_directory_lists_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(boar.list_directory(Path(tmp)), ())

    def test_broken_entry_fails_the_whole_listing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            (root / "ok.txt").write_text("ok", encoding="utf-8")
            os.symlink(root / "gone", root / "dangling")

            with self.assertRaises(boar.ListingError) as ctx:
                boar.list_directory(root)
            self.assertEqual(ctx.exception.path, root / "dangling")

    def test_unreadable_directory_raises_listing_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(boar.ListingError):
                boar.list_directory(Path(tmp) / "missing")


class BuildTargetTests(unittest.TestCase):
    def test_directory_target_is_listed_and_archived(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, tempfile.TemporaryDirectory() as work:
            root = Path(tmp).resolve() / "share"
            root.mkdir()
            (root / "a.txt").write_bytes(b"hello")

            state = boar.build_target(boar.ServeConfig(target=root, port=9000), workdir=Path(work))

            directory = state.target
            self.assertIsInstance(directory, boar.DirectoryDescriptor)
            self.assertEqual(directory.name, "share")
            self.assertEqual(directory.path, root)
            self.assertEqual([f.name for f in directory.files], ["a.txt"])
            self.assertIsNotNone(directory.archive)
            self.assertTrue(directory.archive.path.is_file())
            self.assertEqual(directory.archive.name, "share.zip")
            self.assertEqual(directory.child_archives, ())
            self.assertEqual(state.port, 9000)

    def test_nozip_skips_the_archiver(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            (root / "a.txt").write_bytes(b"hello")

            with mock.patch("boar.create_archive") as create_archive:
                state = boar.build_target(boar.ServeConfig(target=root, nozip=True, children=True))

            create_archive.assert_not_called()
            self.assertIsNone(state.target.archive)
            self.assertEqual(state.target.child_archives, ())

    def test_children_archives_each_subdirectory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, tempfile.TemporaryDirectory() as work:
            root = Path(tmp).resolve()
            (root / "top.txt").write_text("top", encoding="utf-8")
            for name in ("photos", "docs"):
                (root / name).mkdir()
                (root / name / f"{name}.txt").write_text(name, encoding="utf-8")

            state = boar.build_target(boar.ServeConfig(target=root, children=True), workdir=Path(work))

            names = sorted(a.name for a in state.target.child_archives)
            self.assertEqual(names, ["docs.zip", "photos.zip"])
            for archive in state.target.child_archives:
                self.assertTrue(archive.path.is_file())
                self.assertNotEqual(archive.path, state.target.archive.path)

    def test_file_target_ignores_children_flag(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            report = Path(tmp).resolve() / "report.pdf"
            report.write_bytes(b"x" * 2048)

            with mock.patch("boar.create_archive") as create_archive, self.assertLogs("boar", level="WARNING"):
                state = boar.build_target(boar.ServeConfig(target=report, children=True))

            create_archive.assert_not_called()
            self.assertEqual(state.target, boar.FileDescriptor(path=report, name="report.pdf", size=2048))

    def test_default_workdir_is_cleaned_up_at_exit(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            (root / "a.txt").write_bytes(b"hello")

            with mock.patch("boar.atexit.register") as register:
                state = boar.build_target(boar.ServeConfig(target=root))

            register.assert_called_once()
            func, workdir = register.call_args.args
            self.assertIs(func, boar.remove_archive_dir)
            self.assertEqual(state.target.archive.path.parent, workdir.resolve())

            boar.remove_archive_dir(workdir)
            self.assertFalse(workdir.exists())


if __name__ == "__main__":
    unittest.main()
