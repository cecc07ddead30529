"""Structured editor for MariaDB option files.

Option files are ``key = value`` (or bare ``flag``) lines grouped under
``[section]`` markers. :class:`ServerConfig` parses a file into sections,
lets callers set or remove a key, and serialises the result while keeping
comments, ``!include`` directives and unrelated options in place.

A section holds at most one line per key after any mutation: setting a key
drops every existing line for it and inserts the new line directly after the
section marker. MariaDB treats ``-`` and ``_`` in option names as the same
character, so ``bind-address`` and ``bind_address`` address the same key.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


def normalize_key(key: str) -> str:
    """Return the comparison form of an option name."""
    return key.strip().replace("-", "_").lower()


def _strip_value(raw: str) -> str:
    value = raw.strip()
    for marker in (" #", "\t#"):
        index = value.find(marker)
        if index != -1:
            value = value[:index].rstrip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        value = value[1:-1]
    return value


@dataclass(slots=True)
class ConfigLine:
    """One line of an option file."""

    text: str | None = None
    key: str | None = None
    value: str | None = None

    @property
    def is_option(self) -> bool:
        """Return ``True`` for ``key = value`` and bare flag lines."""
        return self.key is not None

    def render(self) -> str:
        """Return the line as it should appear on disk."""
        if self.text is not None:
            return self.text
        if self.value is None:
            return str(self.key)
        return f"{self.key} = {self.value}"


@dataclass(slots=True)
class ConfigSection:
    """A ``[name]`` marker and the lines that follow it."""

    name: str
    header: str
    lines: list[ConfigLine] = field(default_factory=list)


@dataclass(slots=True)
class ServerConfig:
    """Parsed option file."""

    preamble: list[ConfigLine] = field(default_factory=list)
    sections: list[ConfigSection] = field(default_factory=list)
    trailing_newline: bool = True

    @classmethod
    def parse(cls, text: str) -> ServerConfig:
        """Parse option file *text*."""
        config = cls(trailing_newline=text.endswith("\n") or not text)
        current: list[ConfigLine] = config.preamble
        for raw in text.splitlines():
            stripped = raw.strip()
            if stripped.startswith("[") and stripped.endswith("]"):
                section = ConfigSection(name=stripped[1:-1].strip(), header=raw)
                config.sections.append(section)
                current = section.lines
                continue
            if not stripped or stripped[0] in "#;!":
                current.append(ConfigLine(text=raw))
                continue
            key, sep, value = stripped.partition("=")
            current.append(
                ConfigLine(
                    text=raw,
                    key=key.strip(),
                    value=_strip_value(value) if sep else None,
                )
            )
        return config

    @classmethod
    def load(cls, path: Path) -> ServerConfig:
        """Parse *path*; a missing file yields an empty configuration."""
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls()
        return cls.parse(text)

    # ------------------------------------------------------------------
    def has(self, section: str, key: str) -> bool:
        """Return ``True`` when *key* is present in *section*."""
        return self._find(section, key) is not None

    def get(self, section: str, key: str) -> str | None:
        """Return the effective value of *key* in *section*.

        The last occurrence wins, matching how mysqld reads option files.
        Bare flags return an empty string; absent keys return ``None``.
        """
        line = self._find(section, key)
        if line is None:
            return None
        return line.value if line.value is not None else ""

    def set(self, section: str, key: str, value: str | None) -> None:
        """Set *key* in *section*; ``value=None`` writes a bare flag."""
        self.unset(section, key)
        target = self._section(section)
        if target is None:
            target = ConfigSection(name=section, header=f"[{section}]")
            self.sections.append(target)
        target.lines.insert(0, ConfigLine(key=key, value=value))

    def unset(self, section: str, key: str) -> bool:
        """Remove every line for *key* in *section*; return whether any existed."""
        wanted = normalize_key(key)
        removed = False
        for candidate in self.sections:
            if candidate.name != section:
                continue
            kept = [
                line
                for line in candidate.lines
                if not (line.is_option and normalize_key(str(line.key)) == wanted)
            ]
            if len(kept) != len(candidate.lines):
                removed = True
                candidate.lines[:] = kept
        return removed

    def render(self) -> str:
        """Serialise the configuration back to option-file text."""
        out = [line.render() for line in self.preamble]
        for section in self.sections:
            out.append(section.header)
            out.extend(line.render() for line in section.lines)
        text = "\n".join(out)
        if text and self.trailing_newline:
            text += "\n"
        return text

    def save(self, path: Path, *, mode: int = 0o644) -> None:
        """Write the configuration to *path* atomically.

        The existing file's permission bits are preserved; *mode* applies to
        newly created files.
        """
        try:
            mode = path.stat().st_mode & 0o7777
        except FileNotFoundError:
            pass
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.render())
            tmp_path.chmod(mode)
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    def _section(self, name: str) -> ConfigSection | None:
        for section in self.sections:
            if section.name == name:
                return section
        return None

    def _find(self, section: str, key: str) -> ConfigLine | None:
        wanted = normalize_key(key)
        found: ConfigLine | None = None
        for candidate in self.sections:
            if candidate.name != section:
                continue
            for line in candidate.lines:
                if line.is_option and normalize_key(str(line.key)) == wanted:
                    found = line
        return found


__all__ = ["ConfigLine", "ConfigSection", "ServerConfig", "normalize_key"]
