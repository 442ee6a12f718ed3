"""
Apply generated code to a running sandbox, reporting progress as SSE.

Stages: analyzing -> installing -> applying -> complete. Packages come from
the request, from <package> tags and from bare imports in the generated
files; paths are normalised into the template's src/ tree.
"""

import posixpath
import re
from dataclasses import dataclass, field
from typing import AsyncGenerator

from loguru import logger

from sitebuilder import sandbox
from sitebuilder.config import get_settings
from sitebuilder.file_tags import extract_commands, extract_explanation, extract_packages, parse_files
from sitebuilder.sse_utils import sse_event

IMPORT_PATTERN = re.compile(
    r"import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+)(?:\s*,\s*(?:\{[^}]*\}|\*\s+as\s+\w+|\w+))*\s+from\s+)?['\"]([^'\"]+)['\"]"
)

# Shipped with the sandbox template
PREINSTALLED = {"react", "react-dom", "vite", "tailwindcss", "postcss", "autoprefixer", "@vitejs/plugin-react"}

ROOT_LEVEL = {"package.json", "index.html", "vite.config.js", "tailwind.config.js", "postcss.config.js"}


@dataclass
class ParsedResponse:
    files: dict[str, str] = field(default_factory=dict)
    packages: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    explanation: str = ""
    rejected: list[str] = field(default_factory=list)


def package_name(import_path: str) -> str | None:
    """npm package behind an import specifier, or None for local/aliased imports."""
    if import_path.startswith((".", "/", "@/")):
        return None
    parts = import_path.split("/")
    if import_path.startswith("@"):
        return "/".join(parts[:2]) if len(parts) > 1 else None
    return parts[0]


def extract_import_packages(content: str) -> list[str]:
    packages = []
    for m in IMPORT_PATTERN.finditer(content):
        name = package_name(m.group(1))
        if name and name not in PREINSTALLED and name not in packages:
            packages.append(name)
    return packages


def normalize_path(path: str) -> str:
    """
    Map a generated path onto the Vite project layout.

    Raises ValueError for paths that would leave the project directory.
    """
    path = path.strip().replace("\\", "/").lstrip("/")
    if ".." in path.split("/"):
        raise ValueError(f"Unsafe path: {path}")
    path = posixpath.normpath(path)
    if path == ".":
        raise ValueError("Empty path")
    if path in ROOT_LEVEL or path.startswith(("src/", "public/")):
        return path
    return f"src/{path}"


def parse_ai_response(response: str) -> ParsedResponse:
    parsed = ParsedResponse(
        commands=extract_commands(response),
        explanation=extract_explanation(response),
    )
    for path, content in parse_files(response).items():
        try:
            parsed.files[normalize_path(path)] = content.strip() + "\n"
        except ValueError as e:
            logger.warning(f"[apply] Skipping {path!r}: {e}")
            parsed.rejected.append(path)

    for pkg in extract_packages(response):
        if pkg not in parsed.packages:
            parsed.packages.append(pkg)
    for content in parsed.files.values():
        for pkg in extract_import_packages(content):
            if pkg not in parsed.packages:
                parsed.packages.append(pkg)
    return parsed


def _merge_packages(*groups: list[str]) -> list[str]:
    merged = []
    for group in groups:
        for pkg in group or []:
            pkg = pkg.strip()
            if pkg and pkg not in PREINSTALLED and pkg not in merged:
                merged.append(pkg)
    return merged


async def apply_code_stream(
    response: str,
    sandbox_id: str,
    packages: list[str] | None = None,
    is_edit: bool = False,
    api_key: str | None = None,
) -> AsyncGenerator[str, None]:
    """Yield SSE event strings while the generated code is written to the sandbox."""
    settings = get_settings()
    results = {
        "filesCreated": [],
        "filesUpdated": [],
        "packagesInstalled": [],
        "packagesFailed": [],
        "commandsExecuted": [],
        "errors": [],
    }

    try:
        yield sse_event("start", {"message": "Starting code application...", "totalSteps": 3})

        # 1. Analyze
        parsed = parse_ai_response(response)
        to_install = _merge_packages(packages, parsed.packages)
        logger.info(
            f"[apply] {len(parsed.files)} file(s), {len(to_install)} package(s), "
            f"{len(parsed.commands)} command(s) for {sandbox_id[:12]} (edit={is_edit})"
        )
        yield sse_event("step", {
            "step": 1,
            "stage": "analyzing",
            "message": f"Analyzing {len(parsed.files)} files...",
            "files": list(parsed.files),
            "packages": to_install,
        })

        # 2. Install
        if to_install:
            yield sse_event("step", {
                "step": 2,
                "stage": "installing",
                "message": f"Installing {len(to_install)} packages...",
                "packages": to_install,
            })
            try:
                outcome = await sandbox.install_packages(sandbox_id, to_install, api_key)
                results["packagesInstalled"] = outcome["installed"]
                results["packagesFailed"] = outcome["failed"]
                if outcome["failed"]:
                    yield sse_event("warning", {"message": f"Failed to install: {', '.join(outcome['failed'])}"})
            except Exception as e:
                logger.error(f"[apply] Package install failed: {e}")
                results["packagesFailed"] = to_install
                results["errors"].append(f"Package installation failed: {e}")
        else:
            yield sse_event("step", {"step": 2, "stage": "installing", "message": "No new packages to install"})

        # 3. Apply files
        yield sse_event("step", {
            "step": 3,
            "stage": "applying",
            "message": f"Creating {len(parsed.files)} files...",
        })
        for fp in parsed.rejected:
            results["errors"].append(f"Skipped unsafe path {fp}")
            yield sse_event("file-error", {"fileName": fp, "error": "Path outside the project"})

        total = len(parsed.files)
        for index, fp in enumerate(parsed.files, start=1):
            yield sse_event("file-progress", {"current": index, "total": total, "fileName": fp})

        created: set[str] = set()
        failed: dict[str, Exception] = {}
        if parsed.files:
            try:
                new, _ = await sandbox.write_files(sandbox_id, parsed.files, api_key)
                created.update(new)
            except Exception as e:
                # One bad file fails the whole upload; retry file by file
                logger.warning(f"[apply] Batch upload failed, writing files one by one: {e}")
                for fp, content in parsed.files.items():
                    try:
                        new, _ = await sandbox.write_files(sandbox_id, {fp: content}, api_key)
                        created.update(new)
                    except Exception as file_err:
                        logger.error(f"[apply] Failed to write {fp}: {file_err}")
                        failed[fp] = file_err

        for fp in parsed.files:
            if fp in failed:
                results["errors"].append(f"Failed to write {fp}: {failed[fp]}")
                yield sse_event("file-error", {"fileName": fp, "error": str(failed[fp])})
            elif fp in created:
                results["filesCreated"].append(fp)
                yield sse_event("file-complete", {"fileName": fp, "action": "created"})
            else:
                results["filesUpdated"].append(fp)
                yield sse_event("file-complete", {"fileName": fp, "action": "updated"})

        # Commands
        for command in parsed.commands:
            yield sse_event("command-progress", {"command": command, "action": "executing"})
            try:
                exit_code, output = await sandbox.run_command(sandbox_id, command, api_key)
            except Exception as e:
                logger.error(f"[apply] Command failed: {command}: {e}")
                results["errors"].append(f"Command failed: {command}: {e}")
                yield sse_event("command-output", {"command": command, "output": str(e), "stream": "stderr"})
                continue
            if output:
                stream = "stdout" if exit_code == 0 else "stderr"
                yield sse_event("command-output", {"command": command, "output": output, "stream": stream})
            results["commandsExecuted"].append(command)
            yield sse_event("command-complete", {
                "command": command,
                "exitCode": exit_code,
                "success": exit_code == 0,
            })

        if results["packagesInstalled"]:
            try:
                await sandbox.restart_dev_server(sandbox_id, api_key)
            except Exception as e:
                logger.warning(f"[apply] Dev server restart failed: {e}")
                results["errors"].append(f"Dev server restart failed: {e}")

        refresh_delay = (
            settings.package_install_refresh_delay
            if results["packagesInstalled"]
            else settings.default_refresh_delay
        )
        applied = len(results["filesCreated"]) + len(results["filesUpdated"])
        yield sse_event("complete", {
            "results": results,
            "explanation": parsed.explanation,
            "refreshDelay": refresh_delay,
            "message": f"Successfully applied {applied} files",
        })
    except Exception as e:
        logger.exception(f"[apply] Failed: {e}")
        yield sse_event("error", {"error": str(e)})
