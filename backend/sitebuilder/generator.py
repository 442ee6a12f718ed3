"""
AI code generation stream: prompt building and SSE event emission.

One request streams one model completion. The raw text is split into
thinking and code, re-scanned for closed <file> blocks after every
fragment, and reported to the client as:

    status -> [tool_code* (edit)] -> [thinking* -> thinking_complete] -> stream* (+ component/app/package)
           -> conversation -> complete | error
"""

import posixpath
import time
from typing import AsyncGenerator, AsyncIterator, Callable

from loguru import logger

from sitebuilder.file_tags import (
    extract_explanation,
    extract_packages,
    iter_complete_files,
    parse_files,
    strip_tags,
)
from sitebuilder.llm import ProviderChoice, stream_completion
from sitebuilder.sse_utils import sse_event

THINKING_OPEN = "<thinking>"
THINKING_CLOSE = "</thinking>"

APP_COMPONENT_NAMES = {"App.jsx", "App.js", "App.tsx"}

SYSTEM_PROMPT = """You are an expert React developer. You build complete, working web applications
with React 18, Vite and Tailwind CSS.

## Output format
Return every file you create or change inside a file block, with the FULL file contents:

<file path="src/App.jsx">
...complete file contents...
</file>

- Paths are relative to the project root. Components go in `src/components/`.
- `src/App.jsx` is the root component and must import every component it renders.
- `src/index.css` must keep the three `@tailwind` directives at the top.
- Never write markdown code fences inside or around file blocks.
- Declare each npm package you import (other than react and react-dom) as
  <package>package-name</package>
- Shell commands to run after the files are written go in <command>...</command>.
- You MAY think before answering inside <thinking>...</thinking>. Keep it short.
- End with a one-paragraph summary inside <explanation>...</explanation>.

## Rules
- Use Tailwind utility classes for all styling. No inline style objects unless unavoidable.
- Use `className`, self-close void elements, and make layouts responsive.
- Use real, descriptive content. No lorem ipsum.
- Every file must be complete. Never truncate with comments like "rest of code here"."""

EDIT_PROMPT = """
## Edit mode
The application already exists. Change ONLY what the user asks for.
Return only the files you modify, each one complete. Do not recreate untouched files.

## Current files
{current_files}"""


def build_system_prompt(is_edit: bool = False, current_files: dict[str, str] | None = None) -> str:
    prompt = SYSTEM_PROMPT
    if is_edit:
        listing = "\n\n".join(
            f'<file path="{fp}">\n{content}\n</file>' for fp, content in sorted((current_files or {}).items())
        )
        prompt += EDIT_PROMPT.format(current_files=listing or "(none provided)")
    return prompt


def build_user_prompt(prompt: str, context: dict | None = None) -> str:
    website_content = (context or {}).get("websiteContent")
    if not website_content:
        return prompt
    return (
        f"{prompt}\n\n"
        "Use the following scraped website content as the reference for structure and copy:\n\n"
        f"{website_content}"
    )


def component_name(path: str) -> str:
    return posixpath.splitext(posixpath.basename(path))[0]


class ThinkingSplitter:
    """
    Separate <thinking> blocks from the rest of a chunked completion.

    ``feed`` returns ("thinking" | "text" | "thinking_end", fragment) pairs.
    A tag cut across two chunks is held back until it can be decided.
    """

    def __init__(self):
        self._buffer = ""
        self.in_thinking = False

    def feed(self, chunk: str) -> list[tuple[str, str]]:
        self._buffer += chunk
        out: list[tuple[str, str]] = []
        while True:
            tag = THINKING_CLOSE if self.in_thinking else THINKING_OPEN
            kind = "thinking" if self.in_thinking else "text"
            idx = self._buffer.find(tag)
            if idx == -1:
                keep = _partial_tag_suffix(self._buffer, tag)
                ready = self._buffer[:len(self._buffer) - keep]
                if ready:
                    out.append((kind, ready))
                self._buffer = self._buffer[len(ready):]
                return out
            if idx:
                out.append((kind, self._buffer[:idx]))
            self._buffer = self._buffer[idx + len(tag):]
            if self.in_thinking:
                out.append(("thinking_end", ""))
            self.in_thinking = not self.in_thinking

    def flush(self) -> list[tuple[str, str]]:
        out = []
        if self._buffer:
            out.append(("thinking" if self.in_thinking else "text", self._buffer))
        if self.in_thinking:
            out.append(("thinking_end", ""))
        self._buffer = ""
        self.in_thinking = False
        return out


def _partial_tag_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``tag``."""
    for n in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:n]):
            return n
    return 0


async def generate_code_stream(
    prompt: str,
    model: str,
    choice: ProviderChoice,
    api_key: str,
    context: dict | None = None,
    is_edit: bool = False,
    completion: Callable[..., AsyncIterator[str]] = stream_completion,
) -> AsyncGenerator[str, None]:
    """Yield SSE event strings for one generation request."""
    context = context or {}
    start = time.time()
    yield sse_event("status", {"message": "Initializing AI..."})

    current_files = context.get("currentFiles") or {}
    system = build_system_prompt(is_edit, current_files)
    user_prompt = build_user_prompt(prompt, context)

    splitter = ThinkingSplitter()
    generated = ""
    thinking_start: float | None = None
    components: list[dict] = []
    packages: list[str] = []
    emitted_files = 0

    def on_fragment(kind: str, text: str) -> list[str]:
        nonlocal generated, thinking_start, emitted_files
        events = []
        if kind == "thinking":
            if thinking_start is None:
                thinking_start = time.time()
            events.append(sse_event("thinking", {"text": text}))
        elif kind == "thinking_end":
            duration = round(time.time() - (thinking_start or time.time()))
            events.append(sse_event("thinking_complete", {"duration": duration}))
        else:
            generated += text
            events.append(sse_event("stream", {"text": text, "raw": True}))

            matches = list(iter_complete_files(generated))
            for m in matches[emitted_files:]:
                if is_edit and m.path in current_files:
                    events.append(sse_event("tool_code", {"tool_name": "edit_file", "args": {"path": m.path}}))
                if posixpath.basename(m.path) in APP_COMPONENT_NAMES:
                    events.append(sse_event("app", {"message": "Generated main App.jsx", "path": m.path}))
                else:
                    name = component_name(m.path)
                    components.append({"name": name, "path": m.path})
                    events.append(sse_event("component", {
                        "name": name,
                        "path": m.path,
                        "index": len(components),
                    }))
            emitted_files = len(matches)

            for pkg in extract_packages(generated):
                if pkg not in packages:
                    packages.append(pkg)
                    events.append(sse_event("package", {"name": pkg, "message": f"Package detected: {pkg}"}))
        return events

    if is_edit:
        for fp in sorted(current_files):
            yield sse_event("tool_code", {"tool_name": "read_file", "args": {"path": fp}})

    try:
        yield sse_event("status", {"message": "Generating code..."})
        async for chunk in completion(choice, system, user_prompt, api_key):
            for kind, text in splitter.feed(chunk):
                for event in on_fragment(kind, text):
                    yield event
        for kind, text in splitter.flush():
            for event in on_fragment(kind, text):
                yield event
    except Exception as e:
        logger.exception(f"[generate] Generation failed: {e}")
        yield sse_event("error", {"error": str(e)})
        return

    conversation = strip_tags(generated)
    if conversation:
        yield sse_event("conversation", {"text": conversation})

    files = parse_files(generated)
    if not files:
        logger.warning(f"[generate] No file blocks in {len(generated)} chars of output")

    elapsed = time.time() - start
    logger.info(f"[generate] {len(files)} file(s), {len(packages)} package(s) in {elapsed:.1f}s")
    yield sse_event("complete", {
        "generatedCode": generated,
        "explanation": extract_explanation(generated),
        "files": [{"path": fp, "content": content} for fp, content in files.items()],
        "components": components,
        "model": model,
        "packagesToInstall": packages,
    })
