"""Tests for vault primitives, path helpers and collision-free naming."""

import pytest

from artifacting import (
    Vault,
    VaultEntry,
    allocate_path,
    filename_timestamp,
    join_vault_path,
    normalize_path,
    resolve_attachment_folder,
)
from datetime import datetime, timezone


class TestPathHelpers:
    """Test vault path normalization."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Inbox/Screenshots", "Inbox/Screenshots"),
            ("/Inbox//Screenshots/", "Inbox/Screenshots"),
            ("Inbox\\Screenshots", "Inbox/Screenshots"),
            ("/", "/"),
            ("", "/"),
        ],
    )
    def test_normalize_path(self, raw, expected):
        assert normalize_path(raw) == expected

    def test_join_with_root(self):
        assert join_vault_path("/", "a.png") == "a.png"

    def test_join_with_folder(self):
        assert join_vault_path("attachments/", "a.png") == "attachments/a.png"

    def test_filename_timestamp_has_no_separators(self):
        moment = datetime(2024, 5, 1, 12, 30, 45, 123000, tzinfo=timezone.utc)
        assert filename_timestamp(moment) == "2024-05-01T12-30-45-123Z"

    @pytest.mark.parametrize(
        "setting, expected",
        [
            ("/", "/"),
            ("", "/"),
            ("attachments", "attachments"),
            ("./assets", "assets"),
            ("Media/Images/", "Media/Images"),
        ],
    )
    def test_resolve_attachment_folder(self, setting, expected):
        assert resolve_attachment_folder(setting, quiet=True) == expected

    def test_relative_attachment_folder_warns(self, capsys):
        resolve_attachment_folder("./assets")
        assert "Warning" in capsys.readouterr().out


class TestVaultEntry:
    """Test the file/folder variant."""

    def test_file_properties(self):
        entry = VaultEntry(VaultEntry.FILE, "Inbox/Shot.Final.PNG")
        assert entry.is_file and not entry.is_folder
        assert entry.name == "Shot.Final.PNG"
        assert entry.basename == "Shot.Final"
        assert entry.extension == "PNG"
        assert entry.parent == "Inbox"

    def test_root_level_parent(self):
        assert VaultEntry(VaultEntry.FILE, "a.png").parent == "/"

    def test_no_extension(self):
        entry = VaultEntry(VaultEntry.FILE, "Inbox/README")
        assert entry.basename == "README"
        assert entry.extension == ""


class TestVault:
    """Test filesystem primitives."""

    @pytest.fixture
    def vault(self, vault_dir):
        return Vault(str(vault_dir))

    def test_list_children_is_immediate_and_sorted(self, vault, inbox, make_image):
        make_image(inbox, "b.png")
        make_image(inbox, "a.png")
        make_image(inbox / "nested", "deep.png")

        children = vault.list_children("Inbox/Screenshots")

        assert [c.path for c in children] == [
            "Inbox/Screenshots/a.png",
            "Inbox/Screenshots/b.png",
            "Inbox/Screenshots/nested",
        ]
        assert [c.kind for c in children] == ["file", "file", "folder"]

    def test_get_entry(self, vault, inbox, make_image):
        make_image(inbox, "a.png")
        assert vault.get_entry("Inbox/Screenshots").is_folder
        assert vault.get_entry("Inbox/Screenshots/a.png").is_file
        assert vault.get_entry("Nope") is None
        assert vault.get_entry("/").is_folder

    def test_create_is_exclusive(self, vault, vault_dir):
        vault.create("note.md", "first")
        with pytest.raises(FileExistsError):
            vault.create("note.md", "second")
        assert (vault_dir / "note.md").read_text(encoding="utf-8") == "first"

    def test_create_binary_and_read(self, vault):
        vault.create_binary("blob.bin", b"\x00\x01")
        assert vault.read_binary("blob.bin") == b"\x00\x01"

    def test_create_folder_is_idempotent(self, vault, vault_dir):
        vault.create_folder("a/b")
        vault.create_folder("a/b")
        assert (vault_dir / "a" / "b").is_dir()

    def test_rename_moves_file(self, vault, inbox, make_image, vault_dir):
        make_image(inbox, "a.png")
        vault.rename("Inbox/Screenshots/a.png", "a.png")
        assert (vault_dir / "a.png").exists()
        assert not (inbox / "a.png").exists()

    def test_rename_refuses_to_overwrite(self, vault, inbox, make_image, vault_dir):
        make_image(inbox, "a.png", "new")
        make_image(vault_dir, "a.png", "old")
        with pytest.raises(FileExistsError):
            vault.rename("Inbox/Screenshots/a.png", "a.png")

    def test_paths_cannot_escape_vault(self, vault):
        with pytest.raises(ValueError):
            vault.full_path("../outside.txt")


class TestAllocatePath:
    """Test collision-free destination naming."""

    @pytest.fixture
    def vault(self, vault_dir):
        return Vault(str(vault_dir))

    def test_free_name_used_as_is(self, vault):
        assert allocate_path(vault, "attachments", "a", "png") == "attachments/a.png"

    def test_first_collision_gets_suffix_one(self, vault, vault_dir, make_image):
        make_image(vault_dir / "attachments", "a.png")
        assert allocate_path(vault, "attachments", "a", "png") == "attachments/a-1.png"

    def test_suffix_keeps_increasing(self, vault, vault_dir, make_image):
        make_image(vault_dir / "attachments", "a.png")
        make_image(vault_dir / "attachments", "a-1.png")
        assert allocate_path(vault, "attachments", "a", "png") == "attachments/a-2.png"

    def test_gap_in_suffixes_is_reused(self, vault, vault_dir, make_image):
        make_image(vault_dir / "attachments", "a.png")
        make_image(vault_dir / "attachments", "a-2.png")
        assert allocate_path(vault, "attachments", "a", "png") == "attachments/a-1.png"

    def test_vault_root(self, vault, vault_dir, make_image):
        make_image(vault_dir, "a.png")
        assert allocate_path(vault, "/", "a", "png") == "a-1.png"

    def test_other_extensions_do_not_collide(self, vault, vault_dir, make_image):
        make_image(vault_dir, "a.jpg")
        assert allocate_path(vault, "/", "a", "png") == "a.png"
