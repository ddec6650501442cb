"""
Unit tests for vault path resolution and sandboxed file access.
"""

import os

import pytest

from core.errors import NotFoundError, PermissionDeniedError, VaultPathError
from core.vaults import (
    PREFIX_MESSAGE,
    TRAVERSAL_MESSAGE,
    Mode,
    VaultPrefix,
    VaultResolver,
    is_within,
)


@pytest.fixture
def resolver(vaults):
    return VaultResolver(str(vaults["public"]), str(vaults["private"]))


class TestResolve:
    """Tests for VaultResolver.resolve()."""

    def test_public_path(self, resolver, vaults):
        """A plain public path maps under the public root."""
        resolved = resolver.resolve("public/readme.txt")
        assert resolved.vault_prefix == VaultPrefix.PUBLIC
        assert resolved.absolute_path == os.path.join(str(vaults["public"]), "readme.txt")
        assert resolved.relative_path == "public/readme.txt"

    def test_private_nested_path(self, resolver, vaults):
        """Nested private paths keep their structure."""
        resolved = resolver.resolve("private/a/b/c.txt")
        assert resolved.vault_prefix == VaultPrefix.PRIVATE
        assert resolved.absolute_path == os.path.join(str(vaults["private"]), "a", "b", "c.txt")

    def test_encoded_name_is_decoded(self, resolver, vaults):
        """Percent-encoded names are decoded before lookup."""
        resolved = resolver.resolve("public/my%20notes.txt")
        assert resolved.absolute_path.endswith("my notes.txt")

    def test_inner_dotdot_that_stays_inside(self, resolver, vaults):
        """A '..' that never leaves the vault is allowed."""
        resolved = resolver.resolve("public/docs/../readme.txt")
        assert resolved.absolute_path == os.path.join(str(vaults["public"]), "readme.txt")

    @pytest.mark.parametrize("raw", [
        "public/../../etc/passwd",
        "public/%2e%2e%2f%2e%2e%2fetc/passwd",
        "public/%2E%2E/secret",
        "public/..",
        "private/../public/readme.txt",
        "public/readme.txt\0.jpg",
        "public/readme.txt%00.jpg",
        "public/..\\..\\etc\\passwd",
        "public/%5c..%5csecret",
        "public/%zz",
        "public/%",
        "public/%ff%fe",
    ])
    def test_traversal_rejected(self, resolver, raw):
        """Every traversal form gets the same message."""
        with pytest.raises(VaultPathError) as exc_info:
            resolver.resolve(raw)
        assert exc_info.value.message == TRAVERSAL_MESSAGE
        assert exc_info.value.field == "path"

    @pytest.mark.parametrize("raw", [
        "/etc/passwd",
        "etc/passwd",
        "publicfoo/readme.txt",
        "public",
        "public/",
        "",
        "PUBLIC/readme.txt",
    ])
    def test_bad_prefix_rejected(self, resolver, raw):
        with pytest.raises(VaultPathError) as exc_info:
            resolver.resolve(raw)
        assert exc_info.value.message == PREFIX_MESSAGE

    def test_sibling_directory_with_root_prefix(self, tmp_path):
        """A sibling like 'public-evil' is not inside 'public'."""
        public = tmp_path / "public"
        evil = tmp_path / "public-evil"
        public.mkdir()
        evil.mkdir()
        resolver = VaultResolver(str(public), str(tmp_path / "private"))

        with pytest.raises(VaultPathError):
            resolver.resolve("public/../public-evil/x")

    def test_is_within(self):
        assert is_within("/a/b", "/a/b")
        assert is_within("/a/b/c", "/a/b")
        assert not is_within("/a/bc", "/a/b")
        assert not is_within("/a", "/a/b")


class TestSymlinkEscape:
    """Tests for the symlink escape check."""

    def test_symlink_out_of_vault_rejected(self, resolver, vaults):
        """A symlink pointing outside the vault is a traversal."""
        target = vaults["outside"] / "escape-target.txt"
        target.write_text("escaped!")
        os.symlink(target, vaults["public"] / "escape_link.txt")

        resolved = resolver.resolve("public/escape_link.txt")
        with pytest.raises(VaultPathError) as exc_info:
            resolver.check_symlink_escape(resolved)
        assert exc_info.value.message == TRAVERSAL_MESSAGE

    def test_symlinked_directory_out_of_vault_rejected(self, resolver, vaults):
        """An intermediate directory symlink is caught too."""
        outside = vaults["outside"] / "elsewhere"
        outside.mkdir()
        (outside / "data.txt").write_text("x")
        os.symlink(outside, vaults["public"] / "linked")

        resolved = resolver.resolve("public/linked/data.txt")
        with pytest.raises(VaultPathError):
            resolver.check_symlink_escape(resolved)

    def test_symlink_within_vault_allowed(self, resolver, vaults):
        os.symlink(vaults["public"] / "readme.txt", vaults["public"] / "alias.txt")
        resolved = resolver.resolve("public/alias.txt")
        resolver.check_symlink_escape(resolved)

    def test_missing_path_passes(self, resolver):
        """Nonexistent paths are left for the not-found check."""
        resolver.check_symlink_escape(resolver.resolve("public/nope.txt"))

    def test_vault_root_under_symlink(self, tmp_path):
        """A vault that itself lives behind a symlink still resolves its files."""
        real = tmp_path / "real-public"
        real.mkdir()
        (real / "a.txt").write_text("a")
        os.symlink(real, tmp_path / "public-link")

        resolver = VaultResolver(str(tmp_path / "public-link"), str(tmp_path / "private"))
        resolved = resolver.resolve("public/a.txt")
        resolver.check_symlink_escape(resolved)
        assert resolver.read(resolved, Mode.LOCAL)["content"] == "a"


class TestRead:
    """Tests for VaultResolver.read()."""

    def test_reads_public_file(self, resolver):
        result = resolver.read(resolver.resolve("public/readme.txt"), Mode.LOCAL)
        assert result == {"path": "public/readme.txt", "content": "hello public", "size": 12}

    def test_reads_private_file_in_local_mode(self, resolver):
        result = resolver.read(resolver.resolve("private/secret.txt"), Mode.LOCAL)
        assert result["content"] == "top secret"

    def test_cloud_mode_reads_public(self, resolver):
        result = resolver.read(resolver.resolve("public/readme.txt"), Mode.CLOUD)
        assert result["content"] == "hello public"

    def test_cloud_mode_denies_private(self, resolver):
        with pytest.raises(PermissionDeniedError) as exc_info:
            resolver.read(resolver.resolve("private/secret.txt"), Mode.CLOUD)
        assert exc_info.value.status_code == 403
        assert exc_info.value.to_errors() == {"access": ["private vault access denied in CLOUD mode"]}

    def test_cloud_mode_denies_missing_private_file(self, resolver):
        """Policy is checked before existence."""
        with pytest.raises(PermissionDeniedError):
            resolver.read(resolver.resolve("private/nope.txt"), Mode.CLOUD)

    def test_missing_file(self, resolver):
        with pytest.raises(NotFoundError) as exc_info:
            resolver.read(resolver.resolve("public/nope.txt"), Mode.LOCAL)
        assert exc_info.value.to_errors() == {"path": ["file not found"]}

    def test_directory_is_not_a_file(self, resolver):
        with pytest.raises(NotFoundError):
            resolver.read(resolver.resolve("public/docs"), Mode.LOCAL)

    def test_invalid_utf8_is_replaced(self, resolver, vaults):
        (vaults["public"] / "binary.bin").write_bytes(b"ok\xff\xfe")
        result = resolver.read(resolver.resolve("public/binary.bin"), Mode.LOCAL)
        assert result["content"].startswith("ok")
        assert "�" in result["content"]
        assert result["size"] == 4


class TestList:
    """Tests for VaultResolver.list()."""

    def test_local_lists_both_vaults(self, resolver):
        names = [e.name for e in resolver.list(Mode.LOCAL)]
        assert names == [
            "public/docs/",
            "public/docs/guide.md",
            "public/readme.txt",
            "private/secret.txt",
        ]

    def test_cloud_lists_public_only(self, resolver):
        names = [e.name for e in resolver.list(Mode.CLOUD)]
        assert names
        assert all(name.startswith("public/") for name in names)

    def test_entries_have_kind_and_size(self, resolver):
        entries = {e.name: e for e in resolver.list(Mode.LOCAL)}
        assert entries["public/docs/"].kind == "directory"
        assert entries["public/docs/"].size == 0
        assert entries["public/readme.txt"].kind == "file"
        assert entries["public/readme.txt"].size == len("hello public")
        assert entries["public/readme.txt"].to_dict() == {
            "name": "public/readme.txt",
            "kind": "file",
            "size": 12,
        }

    def test_empty_vaults(self, tmp_path):
        (tmp_path / "public").mkdir()
        (tmp_path / "private").mkdir()
        resolver = VaultResolver(str(tmp_path / "public"), str(tmp_path / "private"))
        assert resolver.list(Mode.LOCAL) == []

    def test_missing_vault_root(self, tmp_path):
        resolver = VaultResolver(str(tmp_path / "nope"), str(tmp_path / "nope2"))
        assert resolver.list(Mode.LOCAL) == []

    def test_escaping_symlink_skipped(self, resolver, vaults):
        target = vaults["outside"] / "outside.txt"
        target.write_text("x")
        os.symlink(target, vaults["public"] / "escape_link.txt")

        names = [e.name for e in resolver.list(Mode.LOCAL)]
        assert "public/escape_link.txt" not in names
