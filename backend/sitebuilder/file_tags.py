"""
Tag grammar embedded in generated text.

    <file path="src/App.jsx">...file contents...</file>
    <explanation>...</explanation>
    <package>react-router-dom</package>
    <command>npm run build</command>

File matching is leftmost and non-overlapping; a block ends at the first
closing tag after its opening tag.
"""

import posixpath
import re
from dataclasses import dataclass
from typing import Iterator

FILE_PATTERN = re.compile(r'<file path="([^"]+)">(.*?)</file>', re.DOTALL)
OPEN_FILE_PATTERN = re.compile(r'<file path="([^"]+)">')
EXPLANATION_PATTERN = re.compile(r"<explanation>(.*?)</explanation>", re.DOTALL)
PACKAGE_PATTERN = re.compile(r"<package>(.*?)</package>", re.DOTALL)
PACKAGES_PATTERN = re.compile(r"<packages>(.*?)</packages>", re.DOTALL)
COMMAND_PATTERN = re.compile(r"<command>(.*?)</command>", re.DOTALL)
THINKING_PATTERN = re.compile(r"<thinking>.*?(?:</thinking>|$)", re.DOTALL)
TAG_LEAK_PATTERN = re.compile(r"</?(?:file|explanation|packages?|command|thinking)\b")

_FILE_TYPES = {
    "jsx": "javascript",
    "js": "javascript",
    "css": "css",
    "json": "json",
    "html": "html",
}


@dataclass(frozen=True)
class FileMatch:
    path: str
    content: str
    start: int
    end: int


def infer_file_type(path: str) -> str:
    """Infer the file type label from the path extension."""
    _, ext = posixpath.splitext(path)
    return _FILE_TYPES.get(ext.lstrip(".").lower(), "text")


def iter_complete_files(text: str) -> Iterator[FileMatch]:
    """Yield every closed file block, left to right, in closing order."""
    for m in FILE_PATTERN.finditer(text):
        yield FileMatch(path=m.group(1), content=m.group(2), start=m.start(), end=m.end())


def parse_files(text: str) -> dict[str, str]:
    """Closed file blocks as {path: content}; a later block for a path wins."""
    return {m.path: m.content for m in iter_complete_files(text)}


def last_file_end(text: str) -> int:
    """Offset just past the last closed </file>, or 0 when none closed yet."""
    end = 0
    for m in iter_complete_files(text):
        end = m.end
    return end


def find_trailing_partial(text: str) -> tuple[str, str] | None:
    """
    Return (path, content) of an unterminated trailing file block.

    Only the text after the last closed block is inspected. Any opening tag
    found there cannot have a closing tag after it, otherwise it would have
    formed a complete match.
    """
    tail = text[last_file_end(text):]
    m = OPEN_FILE_PATTERN.search(tail)
    if not m:
        return None
    return m.group(1), tail[m.end():]


def strip_explanation(text: str) -> str:
    return EXPLANATION_PATTERN.sub("", text)


def tail_after_last_file(text: str) -> str:
    """What is left after the last known file, without the explanation block."""
    return strip_explanation(text[last_file_end(text):])


def extract_explanation(text: str) -> str:
    m = EXPLANATION_PATTERN.search(text)
    return m.group(1).strip() if m else ""


def extract_packages(text: str) -> list[str]:
    """Package names from <package> tags and <packages> blocks, deduplicated."""
    names: list[str] = []
    for m in PACKAGE_PATTERN.finditer(text):
        names.append(m.group(1).strip())
    for m in PACKAGES_PATTERN.finditer(text):
        names.extend(re.split(r"[\s,]+", m.group(1)))
    seen: set[str] = set()
    packages = []
    for name in names:
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            packages.append(name)
    return packages


def extract_commands(text: str) -> list[str]:
    return [m.group(1).strip() for m in COMMAND_PATTERN.finditer(text) if m.group(1).strip()]


def strip_tags(text: str) -> str:
    """Prose left once every structured block has been removed."""
    text = FILE_PATTERN.sub("", text)
    partial = OPEN_FILE_PATTERN.search(text)
    if partial:
        text = text[:partial.start()]
    for pattern in (EXPLANATION_PATTERN, PACKAGES_PATTERN, PACKAGE_PATTERN, COMMAND_PATTERN, THINKING_PATTERN):
        text = pattern.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def has_tag_leakage(text: str) -> bool:
    return bool(TAG_LEAK_PATTERN.search(text))
