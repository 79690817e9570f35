from __future__ import annotations
import os
import re
from typing import Mapping

from lexer import FileSystemError


class BlankFileSystem:
    """Default file system: partials are not available."""

    def read_template_file(self, template_path: str) -> str:
        raise FileSystemError("This liquid context does not allow includes.")


class DictFileSystem:
    """Partials served from an in-memory mapping of name to source."""

    def __init__(self, templates: Mapping[str, str]) -> None:
        self.templates = dict(templates)

    def read_template_file(self, template_path: str) -> str:
        try:
            return self.templates[template_path]
        except KeyError:
            raise FileSystemError(f"Could not find asset {template_path}") from None


_TEMPLATE_NAME = re.compile(r"[^./][a-zA-Z0-9_/]+\Z")


class LocalFileSystem:
    """Partials read from disk below ``root``.

    ``{% include 'product' %}`` reads ``<root>/_product.liquid``;
    ``{% include 'dir/product' %}`` reads ``<root>/dir/_product.liquid``.
    """

    def __init__(self, root: str, pattern: str = "_%s.liquid") -> None:
        self.root = root
        self.pattern = pattern

    def full_path(self, template_path: str) -> str:
        if not _TEMPLATE_NAME.match(template_path):
            raise FileSystemError(f"Illegal template name '{template_path}'")
        directory, _, basename = template_path.rpartition("/")
        if directory:
            full_path = os.path.join(self.root, directory, self.pattern % basename)
        else:
            full_path = os.path.join(self.root, self.pattern % template_path)
        resolved = os.path.realpath(full_path)
        root = os.path.realpath(self.root)
        if os.path.commonpath([resolved, root]) != root:
            raise FileSystemError(f"Illegal template path '{resolved}'")
        return full_path

    def read_template_file(self, template_path: str) -> str:
        full_path = self.full_path(template_path)
        try:
            with open(full_path, "r", encoding="utf-8") as handle:
                return handle.read()
        except OSError:
            raise FileSystemError(f"No such template '{template_path}'") from None
