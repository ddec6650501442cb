"""
Vault path resolution and sandboxed read/list access.

Two vaults ("public", "private") are exposed by absolute root path.
User-supplied paths are decoded and normalized first, then checked for
lexical containment of the final resolved path, so encoded,
double-encoded and backslash traversal attempts all go through one test.

Usage:
    from core.vaults import Mode, VaultResolver

    resolver = VaultResolver("/srv/vaults/public", "/srv/vaults/private")
    resolved = resolver.resolve("public/docs/guide.txt")
    result = resolver.read(resolved, Mode.LOCAL)
"""

import logging
import os
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List
from urllib.parse import unquote

from core.errors import NotFoundError, PermissionDeniedError, VaultPathError

logger = logging.getLogger(__name__)

TRAVERSAL_MESSAGE = "path traversal detected"
PREFIX_MESSAGE = "must start with public/ or private/"

# A '%' not followed by two hex digits is a malformed escape
_MALFORMED_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class Mode(Enum):
    """Runtime access policy."""

    LOCAL = "LOCAL"
    CLOUD = "CLOUD"


class VaultPrefix(Enum):
    """Vault namespace tags."""

    PUBLIC = "public"
    PRIVATE = "private"


@dataclass(frozen=True)
class ResolvedPath:
    """A user path validated against its vault root."""

    vault_prefix: VaultPrefix
    vault_root: str
    absolute_path: str
    relative_path: str


@dataclass
class FileEntry:
    """One vault listing entry."""

    name: str
    kind: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_within(path: str, root: str) -> bool:
    """True when ``path`` is ``root`` or lies strictly below it."""
    return path == root or path.startswith(root + os.sep)


def _decode(raw_path: str) -> str:
    """Percent-decode, rejecting malformed escapes and invalid UTF-8."""
    if _MALFORMED_ESCAPE_RE.search(raw_path):
        raise VaultPathError(TRAVERSAL_MESSAGE)
    try:
        return unquote(raw_path, errors="strict")
    except UnicodeDecodeError:
        raise VaultPathError(TRAVERSAL_MESSAGE)


class VaultResolver:
    """
    Maps vault-prefixed user paths onto the two vault roots.

    Resolution is pure and never touches the filesystem. The symlink check
    and the read/list operations are separate because they need stat calls.
    """

    def __init__(self, public_root: str, private_root: str):
        self.roots = {
            VaultPrefix.PUBLIC: os.path.abspath(public_root),
            VaultPrefix.PRIVATE: os.path.abspath(private_root),
        }

    def resolve(self, raw_path: str) -> ResolvedPath:
        """
        Resolve a raw user path like ``public/readme.txt``.

        Raises:
            VaultPathError: on any traversal attempt or a missing/unknown prefix
        """
        if "\0" in raw_path:
            raise VaultPathError(TRAVERSAL_MESSAGE)

        decoded = _decode(raw_path)
        if "\0" in decoded:
            raise VaultPathError(TRAVERSAL_MESSAGE)

        # Backslash is an alternate separator on some platforms
        if "\\" in decoded:
            raise VaultPathError(TRAVERSAL_MESSAGE)

        for prefix, root in self.roots.items():
            marker = prefix.value + "/"
            if decoded.startswith(marker):
                relative = decoded[len(marker):]
                break
        else:
            raise VaultPathError(PREFIX_MESSAGE)

        if relative in ("", "/"):
            raise VaultPathError(PREFIX_MESSAGE)

        absolute_path = os.path.normpath(os.path.join(root, relative))
        if not is_within(absolute_path, root):
            logger.warning(f"Rejected vault path escaping {prefix.value} root: {raw_path!r}")
            raise VaultPathError(TRAVERSAL_MESSAGE)

        return ResolvedPath(
            vault_prefix=prefix,
            vault_root=root,
            absolute_path=absolute_path,
            relative_path=f"{prefix.value}/{relative}",
        )

    def check_symlink_escape(self, resolved: ResolvedPath) -> None:
        """
        Reject paths whose real target leaves the vault.

        A path that does not exist passes; the caller's existence check
        reports the 404. The vault root is compared by its own real path so
        a vault that lives under a symlinked directory still works.
        """
        if not os.path.lexists(resolved.absolute_path):
            return

        real = os.path.realpath(resolved.absolute_path)
        real_root = os.path.realpath(resolved.vault_root)
        if not is_within(real, real_root):
            logger.warning(f"Rejected symlink escape: {resolved.relative_path} -> {real}")
            raise VaultPathError(TRAVERSAL_MESSAGE)

    def read(self, resolved: ResolvedPath, mode: Mode) -> Dict[str, Any]:
        """
        Read a resolved vault file under the given mode.

        Returns:
            Dict with path (display path), content and size (bytes)
        """
        if mode == Mode.CLOUD and resolved.vault_prefix == VaultPrefix.PRIVATE:
            raise PermissionDeniedError("private vault access denied in CLOUD mode")

        self.check_symlink_escape(resolved)

        if not os.path.isfile(resolved.absolute_path):
            raise NotFoundError("file not found", field="path")

        with open(resolved.absolute_path, "rb") as f:
            data = f.read()

        return {
            "path": resolved.relative_path,
            "content": data.decode("utf-8", errors="replace"),
            "size": len(data),
        }

    def list(self, mode: Mode) -> List[FileEntry]:
        """List the public vault, plus the private vault in LOCAL mode."""
        entries = self._walk(VaultPrefix.PUBLIC)
        if mode == Mode.LOCAL:
            entries.extend(self._walk(VaultPrefix.PRIVATE))
        return entries

    def _walk(self, prefix: VaultPrefix) -> List[FileEntry]:
        root = self.roots[prefix]
        real_root = os.path.realpath(root)
        entries: List[FileEntry] = []

        def walk(directory: str) -> None:
            try:
                with os.scandir(directory) as it:
                    items = sorted(it, key=lambda e: e.name)
            except OSError as e:
                logger.debug(f"Skipping unreadable directory {directory}: {e}")
                return

            for item in items:
                try:
                    if item.is_symlink() and not is_within(os.path.realpath(item.path), real_root):
                        continue
                    relative = os.path.relpath(item.path, root)
                    vault_path = f"{prefix.value}/{relative}"

                    if item.is_dir():
                        entries.append(FileEntry(name=f"{vault_path}/", kind="directory", size=0))
                        if not item.is_symlink():
                            walk(item.path)
                    elif item.is_file():
                        entries.append(FileEntry(name=vault_path, kind="file", size=item.stat().st_size))
                except OSError:
                    # Entry vanished or is inaccessible
                    continue

        walk(root)
        return entries
