from types import SimpleNamespace

import pytest

from conftest import FakeExecResult
from sitebuilder import sandbox
from sitebuilder.exceptions import MissingApiKeyError, SandboxError


class FakeProcess:
    def __init__(self, box):
        self.box = box

    def exec(self, cmd, timeout=None):
        self.box.commands.append(cmd)
        if cmd == "echo ready":
            return FakeExecResult("ready")
        if cmd.startswith("test -f"):
            path = cmd.split("'")[1] if "'" in cmd else cmd.split()[2]
            return FakeExecResult("exists" if path in self.box.existing else "missing")
        if "npm install" in cmd:
            code = 0
            for pkg in self.box.bad_packages:
                if pkg in cmd:
                    code = 1
            return FakeExecResult("npm output", code)
        if cmd.startswith("tail"):
            return FakeExecResult("VITE v5 ready in 300 ms\n  Local: http://localhost:5173/")
        if cmd.startswith("curl"):
            return FakeExecResult("200")
        return FakeExecResult("", 0)


class FakeFs:
    def __init__(self, box):
        self.box = box

    def upload_file(self, content, path):
        self.box.uploads[path] = content.decode("utf-8")


class FakeBox:
    def __init__(self, box_id="sb-123456789012345", existing=(), bad_packages=()):
        self.id = box_id
        self.existing = {f"{sandbox.PROJECT_PATH}/{fp}" for fp in existing}
        self.bad_packages = list(bad_packages)
        self.commands = []
        self.uploads = {}
        self.process = FakeProcess(self)
        self.fs = FakeFs(self)

    def create_signed_preview_url(self, port, expires_in_seconds=None):
        return SimpleNamespace(url=f"https://{port}-{self.id}.signed.test")

    def get_preview_link(self, port):
        return SimpleNamespace(url=f"https://{port}-{self.id}.preview.test")


class FakeDaytona:
    def __init__(self, box=None, create_failures=0):
        self.box = box or FakeBox()
        self.create_failures = create_failures
        self.created = 0
        self.deleted = []

    def create(self, params, timeout=None):
        self.created += 1
        if self.created <= self.create_failures:
            raise RuntimeError("capacity")
        return self.box

    def get(self, sandbox_id):
        if sandbox_id != self.box.id:
            raise RuntimeError("not found")
        return self.box

    def delete(self, box):
        self.deleted.append(box.id)


@pytest.fixture
def daytona(monkeypatch):
    fake = FakeDaytona()
    monkeypatch.setattr(sandbox, "get_daytona_client", lambda api_key=None: fake)
    monkeypatch.setattr(sandbox, "CreateSandboxFromSnapshotParams", lambda **kwargs: kwargs)
    monkeypatch.setattr(sandbox.time, "sleep", lambda seconds: None)
    yield fake
    sandbox.active_sandboxes.clear()


@pytest.mark.asyncio
async def test_missing_key_raises_before_any_call():
    with pytest.raises(MissingApiKeyError):
        await sandbox.create_sandbox()


@pytest.mark.asyncio
async def test_create_sandbox_uploads_template_and_starts_vite(daytona):
    data = await sandbox.create_sandbox("dtn_1")

    assert data.sandbox_id == daytona.box.id
    assert data.url == f"https://5173-{daytona.box.id}.signed.test"
    for fp in sandbox.TEMPLATE_FILES:
        assert f"{sandbox.PROJECT_PATH}/{fp}" in daytona.box.uploads
    assert any("npm install" in c for c in daytona.box.commands)
    assert any("npm run dev" in c for c in daytona.box.commands)
    assert sandbox.active_sandboxes[data.sandbox_id]["url"] == data.url


@pytest.mark.asyncio
async def test_create_sandbox_retries_once(daytona):
    daytona.create_failures = 1
    data = await sandbox.create_sandbox("dtn_1")
    assert daytona.created == 2
    assert data.sandbox_id == daytona.box.id


@pytest.mark.asyncio
async def test_create_sandbox_gives_up_after_retry(daytona):
    daytona.create_failures = 5
    with pytest.raises(RuntimeError, match="capacity"):
        await sandbox.create_sandbox("dtn_1")
    assert daytona.created == 2


@pytest.mark.asyncio
async def test_write_files_reports_created_and_updated(daytona):
    daytona.box.existing = {f"{sandbox.PROJECT_PATH}/src/App.jsx"}
    created, updated = await sandbox.write_files(
        daytona.box.id, {"src/App.jsx": "app", "src/components/Hero.jsx": "hero"}, "dtn_1"
    )
    assert created == ["src/components/Hero.jsx"]
    assert updated == ["src/App.jsx"]
    assert daytona.box.uploads[f"{sandbox.PROJECT_PATH}/src/components/Hero.jsx"] == "hero"


@pytest.mark.asyncio
async def test_write_files_raises_after_retries(daytona):
    with pytest.raises(SandboxError, match="File upload failed"):
        await sandbox.write_files("unknown-id", {"a.js": "x"}, "dtn_1")


@pytest.mark.asyncio
async def test_install_packages_batch_success(daytona):
    result = await sandbox.install_packages(daytona.box.id, ["clsx", "framer-motion"], "dtn_1")
    assert result["installed"] == ["clsx", "framer-motion"]
    assert result["failed"] == []


@pytest.mark.asyncio
async def test_install_packages_isolates_failures(daytona):
    daytona.box.bad_packages = ["left-pad-typo"]
    result = await sandbox.install_packages(daytona.box.id, ["clsx", "left-pad-typo"], "dtn_1")
    assert result["installed"] == ["clsx"]
    assert result["failed"] == ["left-pad-typo"]


@pytest.mark.asyncio
async def test_install_nothing_is_a_no_op(daytona):
    assert await sandbox.install_packages(daytona.box.id, [], "dtn_1") == {"installed": [], "failed": [], "output": ""}
    assert daytona.box.commands == []


@pytest.mark.asyncio
async def test_run_command_in_project_dir(daytona):
    exit_code, output = await sandbox.run_command(daytona.box.id, "ls", "dtn_1")
    assert exit_code == 0
    assert daytona.box.commands[-1] == f"cd {sandbox.PROJECT_PATH} && ls 2>&1"


@pytest.mark.asyncio
async def test_status_logs_and_kill(daytona):
    status = await sandbox.get_sandbox_status(daytona.box.id, "dtn_1")
    assert status["active"] and status["healthy"]

    missing = await sandbox.get_sandbox_status("gone", "dtn_1")
    assert missing == {"active": False, "healthy": False, "sandboxId": "gone", "url": None}

    assert "ready in" in await sandbox.get_sandbox_logs(daytona.box.id, "dtn_1", lines=20)

    sandbox.active_sandboxes[daytona.box.id] = {"url": "u", "created_at": 0, "api_key": "dtn_1"}
    await sandbox.kill_sandbox(daytona.box.id, "dtn_1")
    assert daytona.deleted == [daytona.box.id]
    assert daytona.box.id not in sandbox.active_sandboxes
