"""Allow-list path policy for path-gated tools.

Every filesystem path a caller supplies is attacker-shaped. Before a path-gated
tool may use one it passes through ``PathSandbox``, which applies these checks
in a fixed order:

1. for Windows paths, no cmd.exe metacharacters (script paths end up on a
   ``cmd.exe /c`` command line)
2. extension allow-list (case-insensitive)
3. canonicalisation: ``.``/``..`` collapsed and, for host-native paths,
   symbolic links resolved
4. true path-segment prefix containment of the canonical path in one of the
   allowed roots

A canonical path outside every root is reported as directory traversal when
the caller's spelling tried to reach it through ``..`` segments or through a
root (symlink escape), and as an unauthorized directory otherwise.
"""

from __future__ import annotations

import logging
import ntpath
import os
import posixpath
from collections.abc import Iterable
from dataclasses import dataclass
from types import ModuleType

from buildgate.core.errors import ToolValidationError, ValidationErrorKind

logger = logging.getLogger(__name__)

# cmd.exe re-parses its command line; these would split or expand a script path
CMD_METACHARACTERS = frozenset("&|<>^%!\"()\r\n")


@dataclass(frozen=True)
class ValidatedPath:
    """A path that cleared the sandbox.

    Attributes:
        path: Canonical absolute path to use for execution.
        working_directory: Canonical directory to run in. Defaults to the
            directory containing ``path``.
    """

    path: str
    working_directory: str


def _describe_extensions(extensions: Iterable[str]) -> str:
    exts = list(extensions)
    if len(exts) == 1:
        return exts[0]
    return f"{', '.join(exts[:-1])} and {exts[-1]}"


class PathSandbox:
    """Decide whether caller-supplied paths fall inside the allowed roots.

    The sandbox is immutable after construction. It can evaluate paths with
    Windows or POSIX semantics regardless of the host, which keeps the policy
    testable; symlink resolution only happens when the chosen semantics match
    the host's own, since only then do the paths name real files.
    """

    def __init__(
        self,
        allowed_directories: Iterable[str],
        allowed_extensions: Iterable[str] = (),
        *,
        windows: bool | None = None,
        resolve_links: bool = True,
        label: str = "Path",
    ) -> None:
        """Create a sandbox.

        Args:
            allowed_directories: Root directories; paths must lie inside one.
            allowed_extensions: Permitted file extensions (``.bat``). Empty
                means no extension check.
            windows: Use Windows path semantics. Defaults to the host's.
            resolve_links: Resolve symlinks when paths are host-native.
            label: Noun used in rejection messages ("Batch file").
        """
        if windows is None:
            windows = os.name == "nt"
        self._pathmod: ModuleType = ntpath if windows else posixpath
        self._native = self._pathmod is os.path
        self._resolve_links = resolve_links and self._native
        self.label = label
        self.allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)
        # Roots are canonicalised once; they are as immutable as the config.
        self.allowed_directories = tuple(
            self._canonical(root) for root in allowed_directories if root.strip()
        )

    @property
    def windows(self) -> bool:
        return self._pathmod is ntpath

    # ------------------------------------------------------------------
    # Canonicalisation helpers
    # ------------------------------------------------------------------

    def _lexical(self, raw: str) -> str:
        pm = self._pathmod
        if pm is ntpath:
            raw = raw.replace("/", "\\")
        if self._native:
            return pm.abspath(raw)
        return pm.normpath(raw)

    def _canonical(self, raw: str) -> str:
        lexical = self._lexical(raw)
        if self._resolve_links:
            return os.path.realpath(lexical)
        return lexical

    def _has_parent_segment(self, raw: str) -> bool:
        parts = raw.replace("\\", "/").split("/") if self.windows else raw.split("/")
        return ".." in parts

    def _within(self, path: str, root: str, allow_equal: bool) -> bool:
        """True path-segment containment on canonical strings."""
        pm = self._pathmod
        sep = "\\" if pm is ntpath else "/"
        path_cmp = pm.normcase(path)
        root_cmp = pm.normcase(root).rstrip(sep)
        if allow_equal and path_cmp.rstrip(sep) == root_cmp:
            return True
        return path_cmp.startswith(root_cmp + sep)

    def _root_for(self, path: str, allow_equal: bool) -> str | None:
        for root in self.allowed_directories:
            if self._within(path, root, allow_equal):
                return root
        return None

    # ------------------------------------------------------------------
    # Public checks
    # ------------------------------------------------------------------

    def _check_containment(self, raw: str, canonical: str, allow_equal: bool, noun: str) -> None:
        if self._root_for(canonical, allow_equal) is not None:
            return

        lexical = self._lexical(raw)
        escaped_via_link = lexical != canonical and self._root_for(lexical, allow_equal) is not None
        if self._has_parent_segment(raw) or escaped_via_link:
            logger.warning(f"Directory traversal rejected: {raw!r} -> {canonical!r}")
            raise ToolValidationError(
                ValidationErrorKind.DIRECTORY_TRAVERSAL,
                f"Directory traversal detected in {noun.lower()} path",
            )

        logger.warning(f"Path outside allowed directories rejected: {canonical!r}")
        allowed = ", ".join(self.allowed_directories) or "(none configured)"
        raise ToolValidationError(
            ValidationErrorKind.UNAUTHORIZED_DIRECTORY,
            f"{noun} must be in one of the allowed directories: {allowed}",
        )

    def _require_string(self, value: object, noun: str) -> str:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ToolValidationError(
                ValidationErrorKind.MISSING_FIELD, f"{noun} path is required"
            )
        if not isinstance(value, str):
            raise ToolValidationError(ValidationErrorKind.BAD_TYPE, f"{noun} path must be a string")
        if "\x00" in value:
            raise ToolValidationError(
                ValidationErrorKind.BAD_TYPE, f"{noun} path contains a null byte"
            )
        return value.strip()

    def validate_file(self, raw: object) -> str:
        """Validate a file path and return its canonical form.

        Raises:
            ToolValidationError: BadType for cmd.exe metacharacters in a
                Windows path, then InvalidExtension, DirectoryTraversal or
                UnauthorizedDirectory, checked in that order.
        """
        raw = self._require_string(raw, self.label)
        if self.windows:
            found = sorted(CMD_METACHARACTERS.intersection(raw))
            if found:
                logger.warning(f"Shell metacharacters rejected in {raw!r}")
                raise ToolValidationError(
                    ValidationErrorKind.BAD_TYPE,
                    f"{self.label} path contains characters not allowed on Windows: "
                    + " ".join(repr(c) for c in found),
                )

        if self.allowed_extensions:
            ext = self._pathmod.splitext(raw)[1].lower()
            if ext not in self.allowed_extensions:
                raise ToolValidationError(
                    ValidationErrorKind.INVALID_EXTENSION,
                    f"Only {_describe_extensions(self.allowed_extensions)} files are allowed",
                )

        canonical = self._canonical(raw)
        self._check_containment(raw, canonical, allow_equal=False, noun=self.label)
        return canonical

    def validate_directory(self, raw: object, noun: str = "Working directory") -> str:
        """Validate a directory path; it may equal an allowed root."""
        raw = self._require_string(raw, noun)
        canonical = self._canonical(raw)
        self._check_containment(raw, canonical, allow_equal=True, noun=noun)
        return canonical

    def validate_any(self, raw: object, noun: str) -> str:
        """Validate a path that may name either a file or a directory."""
        raw = self._require_string(raw, noun)
        canonical = self._canonical(raw)
        self._check_containment(raw, canonical, allow_equal=True, noun=noun)
        return canonical

    def validate(self, raw: object, working_directory: object | None = None) -> ValidatedPath:
        """Validate a script path plus an optional explicit working directory.

        The working directory defaults to the script's own directory and, when
        supplied, must pass the same prefix rule independently.
        """
        path = self.validate_file(raw)
        if working_directory is None or working_directory == "":
            workdir = self._pathmod.dirname(path)
        else:
            workdir = self.validate_directory(working_directory)
        return ValidatedPath(path=path, working_directory=workdir)
