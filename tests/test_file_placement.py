"""File placement tests against a tmp_path upload root"""

from pathlib import Path

import pytest

from orders.errors import DuplicateIdentifier, StorageFailure
from orders.models import IncomingFile


class TestPlace:

    async def test_moves_uploads_under_identifier(self, files, make_uploads, upload_root):
        uploads = make_uploads("report.pdf", "notes.pdf")

        stored = await files.place("482913", uploads)

        assert stored == [
            str(upload_root / "482913" / "report.pdf"),
            str(upload_root / "482913" / "notes.pdf"),
        ]
        assert all(Path(p).is_file() for p in stored)
        assert not any(u.path.exists() for u in uploads)

    async def test_keeps_only_the_base_name(self, files, make_uploads, upload_root):
        upload = make_uploads("x.pdf")[0]
        upload.filename = "../../etc/x.pdf"

        stored = await files.place("482913", [upload])

        assert stored == [str(upload_root / "482913" / "x.pdf")]

    async def test_missing_upload_is_storage_failure(self, files, tmp_path):
        ghost = IncomingFile(path=tmp_path / "never-written", filename="a.pdf")

        with pytest.raises(StorageFailure):
            await files.place("482913", [ghost])

    async def test_existing_directory_is_a_duplicate(self, files, make_uploads, upload_root):
        await files.place("482913", make_uploads("first.pdf"))
        late = make_uploads("second.pdf")

        with pytest.raises(DuplicateIdentifier):
            await files.place("482913", late)

        assert [p.name for p in (upload_root / "482913").iterdir()] == ["first.pdf"]
        assert late[0].path.is_file()

    async def test_failed_move_removes_only_its_new_directory(self, files, make_uploads, upload_root, tmp_path):
        ghost = IncomingFile(path=tmp_path / "never-written", filename="b.pdf")

        with pytest.raises(StorageFailure):
            await files.place("482913", make_uploads("a.pdf") + [ghost])

        assert not (upload_root / "482913").exists()

    @pytest.mark.parametrize("identifier", ["", ".", "..", "a/b"])
    async def test_rejects_unusable_identifiers(self, files, make_uploads, identifier):
        with pytest.raises(StorageFailure):
            await files.place(identifier, make_uploads("a.pdf"))


class TestRelocate:

    async def test_renames_directory_and_rewrites_paths(self, files, make_uploads, upload_root):
        stored = await files.place("cf_1", make_uploads("a.pdf", "b.pdf"))

        moved = await files.relocate("cf_1", "482913", stored)

        assert moved == [
            str(upload_root / "482913" / "a.pdf"),
            str(upload_root / "482913" / "b.pdf"),
        ]
        assert not (upload_root / "cf_1").exists()
        assert all(Path(p).is_file() for p in moved)

    async def test_second_call_is_a_no_op(self, files, make_uploads, upload_root):
        stored = await files.place("cf_1", make_uploads("a.pdf"))
        first = await files.relocate("cf_1", "482913", stored)

        second = await files.relocate("cf_1", "482913", stored)

        assert second == first
        assert Path(second[0]).read_bytes() == b"%PDF-1.4 a.pdf"

    async def test_missing_source_and_target_returns_paths_unchanged(self, files, upload_root):
        paths = [str(upload_root / "cf_gone" / "a.pdf")]

        assert await files.relocate("cf_gone", "482913", paths) == paths
        assert not (upload_root / "482913").exists()

    async def test_occupied_target_is_storage_failure(self, files, make_uploads, upload_root):
        stored = await files.place("cf_1", make_uploads("a.pdf"))
        await files.place("482913", make_uploads("other.pdf"))

        with pytest.raises(StorageFailure):
            await files.relocate("cf_1", "482913", stored)

        assert (upload_root / "cf_1" / "a.pdf").is_file()


class TestDiscardAndResolve:

    async def test_discard_removes_directory(self, files, make_uploads, upload_root):
        await files.place("482913", make_uploads("a.pdf"))

        await files.discard("482913")

        assert not (upload_root / "482913").exists()

    async def test_discard_missing_directory_is_quiet(self, files):
        await files.discard("000000")

    async def test_resolve_finds_stored_document(self, files, make_uploads, upload_root):
        await files.place("482913", make_uploads("a.pdf"))

        assert files.resolve("482913", "a.pdf") == (upload_root / "482913" / "a.pdf").resolve()

    @pytest.mark.parametrize("filename", ["missing.pdf", "../cf_1/a.pdf", "../../secret"])
    async def test_resolve_refuses_missing_or_outside_files(self, files, make_uploads, filename):
        await files.place("482913", make_uploads("a.pdf"))
        await files.place("cf_1", make_uploads("a.pdf"))

        assert files.resolve("482913", filename) is None
