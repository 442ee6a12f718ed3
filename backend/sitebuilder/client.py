"""
Client session: drives the backend the way the chat page does.

    session = BuilderSession(BuilderClient("http://localhost:8000", api_keys))
    await session.send_chat("A landing page for a coffee roaster")
    print(session.sandbox.url)

``send_chat`` starts sandbox creation in parallel with generation, waits for
both, applies the code and finally waits the refresh delay the apply
endpoint asked for before the preview is considered up to date.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from sitebuilder.api_keys import build_request_body_keys, build_request_headers
from sitebuilder.config import get_settings
from sitebuilder.exceptions import GenerationError, InvalidTransitionError, SiteBuilderError, UpstreamError
from sitebuilder.generation import ChatLog, GenerationProgress, GenerationState, StreamedGenerationConsumer
from sitebuilder.models import ApiKeys, CommandType, MessageMetadata, MessageType, SandboxData
from sitebuilder.sse_utils import aiter_sse_payloads


class BuilderClient:
    """Thin HTTP client that attaches the user's API keys to every request."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_keys: ApiKeys | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_keys = dict(api_keys or {})
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(get_settings().apply_timeout, connect=15.0),
        )

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", **build_request_headers(self.api_keys)}

    def _body(self, body: dict[str, Any] | None) -> dict[str, Any]:
        return {**(body or {}), **build_request_body_keys(self.api_keys)}

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text or resp.reason_phrase
        if isinstance(data, dict):
            return data.get("error") or data.get("detail") or resp.reason_phrase
        return resp.reason_phrase

    async def post_json(self, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self._client.post(f"{self.base_url}{path}", json=self._body(body), headers=self._headers())
        if not resp.is_success:
            raise UpstreamError("Backend", resp.status_code, self._error_message(resp))
        return resp.json()

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self._client.get(f"{self.base_url}{path}", params=params, headers=self._headers())
        if not resp.is_success:
            raise UpstreamError("Backend", resp.status_code, self._error_message(resp))
        return resp.json()

    @asynccontextmanager
    async def stream_lines(self, path: str, body: dict[str, Any] | None = None) -> AsyncIterator[AsyncIterator[str]]:
        """POST and yield the response's text lines; a non-2xx answer raises before streaming."""
        async with self._client.stream(
            "POST", f"{self.base_url}{path}", json=self._body(body), headers=self._headers()
        ) as resp:
            if not resp.is_success:
                await resp.aread()
                raise UpstreamError("Backend", resp.status_code, self._error_message(resp))
            yield resp.aiter_lines()

    async def aclose(self) -> None:
        await self._client.aclose()


class BuilderSession:
    """Chat, generation progress and sandbox of one user session."""

    def __init__(self, client: BuilderClient, model: str | None = None, model_name: str | None = None):
        settings = get_settings()
        self.client = client
        self.model = model or settings.default_model
        if not settings.is_known_model(self.model):
            logger.warning(f"[session] Unknown model {self.model!r}, using {settings.default_model}")
            self.model = settings.default_model
        self.model_name = model_name  # real model id behind "openrouter"
        self.chat = ChatLog()
        self.progress = GenerationProgress()
        self.sandbox: SandboxData | None = None
        self.last_generated_code = ""
        self.website_content: str | None = None
        self.last_apply_results: dict[str, Any] | None = None
        # One request at a time owns self.progress
        self._request_lock = asyncio.Lock()

    # -- sandbox ---------------------------------------------------------

    async def create_sandbox(self) -> SandboxData | None:
        self.chat.add("Creating sandbox...", MessageType.SYSTEM)
        try:
            data = await self.client.post_json("/api/create-ai-sandbox", {})
            if not data.get("success"):
                raise SiteBuilderError(data.get("error") or "Unknown error")
            self.sandbox = SandboxData(sandbox_id=data["sandboxId"], url=data["url"])
        except (SiteBuilderError, httpx.HTTPError) as e:
            logger.error(f"[session] Sandbox creation failed: {e}")
            self.chat.add(f"Failed to create sandbox: {e}", MessageType.ERROR)
            return None
        self.chat.add(f"Sandbox created! URL: {self.sandbox.url}", MessageType.SYSTEM)
        return self.sandbox

    async def restore_sandbox(self, sandbox_id: str) -> SandboxData | None:
        """Reattach to an existing sandbox, e.g. one named in a shared URL."""
        try:
            data = await self.client.get_json("/api/sandbox-status", {"sandboxId": sandbox_id})
        except (SiteBuilderError, httpx.HTTPError) as e:
            logger.warning(f"[session] Could not restore sandbox {sandbox_id}: {e}")
            data = {}
        if not data.get("active") or not data.get("url"):
            self.chat.add(f"Sandbox {sandbox_id} is no longer available", MessageType.SYSTEM)
            return None
        self.sandbox = SandboxData(sandbox_id=sandbox_id, url=data["url"])
        self.chat.add(f"Restored sandbox {sandbox_id}", MessageType.SYSTEM)
        return self.sandbox

    def preview_refresh_url(self) -> str | None:
        """Cache-busting preview URL to load after code was applied."""
        if not self.sandbox:
            return None
        return f"{self.sandbox.url}?t={int(time.time() * 1000)}"

    # -- scraping --------------------------------------------------------

    async def scrape(self, url: str) -> dict[str, Any] | None:
        self.chat.add(f"Scraping {url}...", MessageType.SYSTEM)
        try:
            data = await self.client.post_json("/api/scrape-url-enhanced", {"url": url})
        except (SiteBuilderError, httpx.HTTPError) as e:
            self.chat.add(f"Failed to scrape website: {e}", MessageType.ERROR)
            return None
        self.website_content = data.get("content")
        title = (data.get("structured") or {}).get("title") or url
        self.chat.add(
            f"Scraped {title}",
            MessageType.SYSTEM,
            MessageMetadata(website_description=(data.get("structured") or {}).get("description")),
        )
        return data

    # -- chat ------------------------------------------------------------

    def _context(self, is_edit: bool) -> dict[str, Any]:
        context: dict[str, Any] = {"sandboxId": self.sandbox.sandbox_id if self.sandbox else None}
        if self.model == "openrouter":
            context["modelName"] = self.model_name
        if is_edit:
            context["currentFiles"] = {f.path: f.content for f in self.progress.files}
        if self.website_content:
            context["websiteContent"] = self.website_content
        return context

    async def _generate(self, consumer: StreamedGenerationConsumer, body: dict[str, Any]) -> None:
        async with self.client.stream_lines("/api/generate-ai-code-stream", body) as lines:
            await consumer.consume(lines)

    async def send_chat(self, message: str, is_edit: bool | None = None) -> GenerationProgress:
        """Generate code for ``message`` and apply it to the sandbox."""
        message = message.strip()
        if not message:
            return self.progress
        if self.model == "openrouter" and not self.model_name:
            self.chat.add("OpenRouter needs a model name before sending messages", MessageType.ERROR)
            return self.progress

        async with self._request_lock:
            return await self._run_request(message, is_edit)

    async def _run_request(self, message: str, is_edit: bool | None) -> GenerationProgress:
        settings = get_settings()
        edit = bool(self.progress.files) if is_edit is None else is_edit

        self.chat.add(message, MessageType.USER)
        self.progress.begin(edit=edit)
        consumer = StreamedGenerationConsumer(self.progress, self.chat, apply_after_complete=True)

        sandbox_task = asyncio.create_task(self.create_sandbox()) if self.sandbox is None else None
        body = {"prompt": message, "model": self.model, "context": self._context(edit), "isEdit": edit}

        try:
            await asyncio.wait_for(self._generate(consumer, body), timeout=settings.generation_timeout)
        except GenerationError:
            pass  # consumer already recorded the error event
        except InvalidTransitionError as e:
            consumer.abort(str(e))
        except asyncio.TimeoutError:
            consumer.abort(f"Generation timed out after {settings.generation_timeout:.0f}s")
        except UpstreamError as e:
            consumer.abort(e.body or str(e))
        except httpx.HTTPError as e:
            consumer.abort(f"Connection error: {e}")

        if sandbox_task is not None:
            await sandbox_task

        if self.progress.state is GenerationState.ERROR:
            return self.progress
        if self.progress.state is not GenerationState.APPLYING:
            consumer.abort("Generation stream ended before completion")
            return self.progress

        self.last_generated_code = self.progress.generated_code
        if not self.sandbox:
            consumer.abort("Cannot apply code, no active sandbox.")
            return self.progress

        await self._apply(consumer, edit)
        return self.progress

    async def _apply(self, consumer: StreamedGenerationConsumer, is_edit: bool) -> None:
        settings = get_settings()
        self.chat.add("Applying generated code...", MessageType.SYSTEM)
        body = {
            "response": self.progress.generated_code,
            "sandboxId": self.sandbox.sandbox_id,
            "packages": self.progress.packages_to_install,
            "isEdit": is_edit,
        }

        async def _read() -> dict[str, Any] | None:
            async with self.client.stream_lines("/api/apply-ai-code-stream", body) as lines:
                async for event in aiter_sse_payloads(lines):
                    kind = event.get("type")
                    if kind == "complete":
                        return event
                    if kind == "error":
                        raise SiteBuilderError(event.get("error") or "Unknown error")
                    if kind and kind.startswith("command-"):
                        self._record_command_event(event)
                    if event.get("message"):
                        self.progress.status = event["message"]
            return None

        try:
            result = await asyncio.wait_for(_read(), timeout=settings.apply_timeout)
        except asyncio.TimeoutError:
            consumer.abort(f"Failed to apply code: timed out after {settings.apply_timeout:.0f}s")
            return
        except (SiteBuilderError, httpx.HTTPError) as e:
            consumer.abort(f"Failed to apply code: {e}")
            return
        if result is None:
            consumer.abort("Failed to apply code: stream ended before completion")
            return

        results = result.get("results") or {}
        self.last_apply_results = results
        applied = [*results.get("filesCreated", []), *results.get("filesUpdated", [])]
        self.chat.add(
            "Code applied successfully!",
            MessageType.SYSTEM,
            MessageMetadata(applied_files=applied, generated_code=self.progress.generated_code),
        )
        for error in results.get("errors") or []:
            self.chat.add(error, MessageType.ERROR)
        if is_edit:
            edited = [f.path for f in self.progress.files if f.edited]
            if edited:
                self.chat.add(
                    f"Updated {', '.join(edited)}",
                    MessageType.FILE_UPDATE,
                    MessageMetadata(edited_files=edited),
                )

        refresh_delay = result.get("refreshDelay", settings.default_refresh_delay)
        await asyncio.sleep(refresh_delay / 1000)
        self.progress.finish("Code applied")

    def _record_command_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        command = event.get("command", "")
        if kind == "command-progress":
            self.chat.add(command, MessageType.COMMAND, MessageMetadata(command_type=CommandType.INPUT))
        elif kind == "command-output":
            command_type = CommandType.ERROR if event.get("stream") == "stderr" else CommandType.OUTPUT
            self.chat.add(event.get("output", ""), MessageType.COMMAND, MessageMetadata(command_type=command_type))
        elif kind == "command-complete":
            if event.get("success"):
                self.chat.add(f"{command} finished", MessageType.COMMAND, MessageMetadata(command_type=CommandType.SUCCESS))
            else:
                self.chat.add(
                    f"{command} exited with code {event.get('exitCode')}",
                    MessageType.COMMAND,
                    MessageMetadata(command_type=CommandType.ERROR),
                )
