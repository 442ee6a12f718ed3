import pytest
from fastapi.testclient import TestClient

from conftest import parse_sse_body
from sitebuilder import generator, sandbox, scraper
from sitebuilder.exceptions import UpstreamError
from sitebuilder.main import app
from sitebuilder.models import SandboxData


@pytest.fixture
def client():
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_config_exposes_registry_without_secrets(client, monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk_secret")
    body = client.get("/api/config").json()
    assert body["defaultModel"] == "moonshotai/kimi-k2-instruct"
    assert "anthropic/claude-sonnet-4-20250514" in body["availableModels"]
    assert body["defaultRefreshDelay"] == 2000
    assert body["packageInstallRefreshDelay"] == 5000
    assert "gsk_secret" not in str(body)


def test_config_lists_openrouter_free_models(client):
    models = client.get("/api/config").json()["openrouterFreeModels"]
    assert [m["id"] for m in models] == [
        "qwen/qwen3-coder:free",
        "z-ai/glm-4.5-air:free",
        "openai/gpt-oss-20b:free",
    ]
    assert models[0]["contextLength"] == 32768
    assert models[0]["isFree"] is True


def test_validate_api_key_format_only(client):
    resp = client.post("/api/validate-api-key", json={"provider": "firecrawl", "apiKey": "nope"})
    assert resp.json() == {"valid": False, "error": 'Firecrawl API key should start with "fc-"'}


# -- scraping ---------------------------------------------------------------

def test_scrape_requires_url(client):
    resp = client.post("/api/scrape-url-enhanced", json={}, headers={"x-firecrawl-api-key": "fc-1"})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "URL is required"}


def test_scrape_requires_key(client):
    resp = client.post("/api/scrape-url-enhanced", json={"url": "https://a.test"})
    assert resp.status_code == 400
    assert "Firecrawl API key is required" in resp.json()["error"]


def test_scrape_passes_header_key(client, monkeypatch):
    seen = {}

    async def fake_scrape(url, api_key):
        seen.update(url=url, api_key=api_key)
        return {"success": True, "url": url, "content": "Title: A"}

    monkeypatch.setattr(scraper, "scrape_url_enhanced", fake_scrape)
    resp = client.post(
        "/api/scrape-url-enhanced",
        json={"url": "https://a.test", "firecrawlApiKey": "fc-body"},
        headers={"x-firecrawl-api-key": "fc-header"},
    )
    assert resp.status_code == 200
    assert resp.json()["content"] == "Title: A"
    assert seen == {"url": "https://a.test", "api_key": "fc-header"}


def test_scrape_upstream_failure_is_500(client, monkeypatch):
    async def failing(url, api_key):
        raise UpstreamError("Firecrawl", 502, "bad gateway")

    monkeypatch.setattr(scraper, "scrape_screenshot", failing)
    resp = client.post("/api/scrape-screenshot", json={"url": "https://a.test", "firecrawlApiKey": "fc-1"})
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Firecrawl API error (502): bad gateway"}


# -- sandboxes --------------------------------------------------------------

def test_create_sandbox(client, monkeypatch):
    async def fake_create(api_key):
        assert api_key == "dtn_1"
        return SandboxData(sandbox_id="sb-1", url="https://5173-sb-1.preview.test")

    monkeypatch.setattr(sandbox, "create_sandbox", fake_create)
    resp = client.post("/api/create-ai-sandbox", json={}, headers={"x-daytona-api-key": "dtn_1"})
    assert resp.json() == {"success": True, "sandboxId": "sb-1", "url": "https://5173-sb-1.preview.test"}


def test_create_sandbox_without_key(client):
    resp = client.post("/api/create-ai-sandbox", json={})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_create_sandbox_failure(client, monkeypatch):
    async def failing(api_key):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr(sandbox, "create_sandbox", failing)
    resp = client.post("/api/create-ai-sandbox", json={"daytonaApiKey": "dtn_1"})
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "quota exceeded"}


def test_sandbox_status_and_logs(client, monkeypatch):
    async def fake_status(sandbox_id, api_key):
        return {"active": True, "healthy": True, "sandboxId": sandbox_id, "url": "https://p.test"}

    async def fake_logs(sandbox_id, api_key, lines=100):
        return f"VITE ready ({lines})"

    monkeypatch.setattr(sandbox, "get_sandbox_status", fake_status)
    monkeypatch.setattr(sandbox, "get_sandbox_logs", fake_logs)
    headers = {"x-daytona-api-key": "dtn_1"}

    status = client.get("/api/sandbox-status", params={"sandboxId": "sb-1"}, headers=headers).json()
    assert status["active"] is True and status["sandboxId"] == "sb-1"

    logs = client.get("/api/sandbox-logs", params={"sandboxId": "sb-1", "lines": 5}, headers=headers).json()
    assert logs == {"success": True, "logs": "VITE ready (5)"}

    assert client.get("/api/sandbox-status", headers=headers).status_code == 400


def test_kill_sandbox(client, monkeypatch):
    killed = []

    async def fake_kill(sandbox_id, api_key):
        killed.append(sandbox_id)

    monkeypatch.setattr(sandbox, "kill_sandbox", fake_kill)
    resp = client.post("/api/kill-sandbox", json={"sandboxId": "sb-9", "daytonaApiKey": "dtn_1"})
    assert resp.json() == {"success": True, "sandboxId": "sb-9"}
    assert killed == ["sb-9"]


# -- generation -------------------------------------------------------------

def test_generate_missing_key_is_400_before_streaming(client):
    resp = client.post("/api/generate-ai-code-stream", json={"prompt": "a site", "model": "moonshotai/kimi-k2-instruct"})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Groq API key is required")


def test_generate_openrouter_needs_model_name(client):
    resp = client.post(
        "/api/generate-ai-code-stream",
        json={"prompt": "a site", "model": "openrouter", "context": {}},
        headers={"x-openrouter-api-key": "sk-or-1"},
    )
    assert resp.status_code == 400


def test_generate_streams_events(client, monkeypatch):
    real = generator.generate_code_stream
    captured = {}

    async def completion(choice, system, prompt, api_key):
        captured.update(provider=choice.provider, model=choice.model, api_key=api_key)
        yield '<file path="src/App.jsx">app</file>'

    def patched(*args, **kwargs):
        return real(*args, completion=completion, **kwargs)

    monkeypatch.setattr(generator, "generate_code_stream", patched)
    resp = client.post(
        "/api/generate-ai-code-stream",
        json={"prompt": "a site", "model": "anthropic/claude-sonnet-4-20250514", "anthropicApiKey": "sk-ant-1"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = parse_sse_body(resp.text)
    assert [e["type"] for e in events][-1] == "complete"
    assert events[-1]["files"] == [{"path": "src/App.jsx", "content": "app"}]
    assert captured == {"provider": "anthropic", "model": "claude-sonnet-4-20250514", "api_key": "sk-ant-1"}


def test_generate_openrouter_uses_context_key(client, monkeypatch):
    captured = {}

    async def fake_stream(prompt, model, choice, api_key, context=None, is_edit=False):
        captured.update(model=choice.model, api_key=api_key, is_edit=is_edit)
        yield 'data: {"type": "complete", "generatedCode": ""}\n\n'

    monkeypatch.setattr(generator, "generate_code_stream", fake_stream)
    resp = client.post("/api/generate-ai-code-stream", json={
        "prompt": "edit it",
        "model": "openrouter",
        "isEdit": True,
        "context": {"modelName": "qwen/qwen3-coder:free", "apiKey": "sk-or-ctx"},
    })
    assert resp.status_code == 200
    assert captured == {"model": "qwen/qwen3-coder:free", "api_key": "sk-or-ctx", "is_edit": True}


# -- apply ------------------------------------------------------------------

def test_apply_validates_body(client):
    assert client.post("/api/apply-ai-code-stream", json={"sandboxId": "sb"}).status_code == 400
    assert client.post("/api/apply-ai-code-stream", json={"response": "x"}).status_code == 400
    resp = client.post("/api/apply-ai-code-stream", json={"response": "x", "sandboxId": "sb"})
    assert resp.status_code == 400
    assert "Daytona" in resp.json()["error"]


def test_apply_streams_progress(client, monkeypatch):
    async def fake_install(sandbox_id, packages, api_key=None):
        return {"installed": packages, "failed": [], "output": ""}

    async def fake_write(sandbox_id, files, api_key=None):
        return list(files), []

    async def fake_restart(sandbox_id, api_key=None):
        return None

    monkeypatch.setattr(sandbox, "install_packages", fake_install)
    monkeypatch.setattr(sandbox, "write_files", fake_write)
    monkeypatch.setattr(sandbox, "restart_dev_server", fake_restart)

    resp = client.post(
        "/api/apply-ai-code-stream",
        json={
            "response": '<file path="App.jsx">import clsx from "clsx"</file>',
            "sandboxId": "sb-1",
            "packages": [],
        },
        headers={"x-daytona-api-key": "dtn_1"},
    )
    events = parse_sse_body(resp.text)
    stages = [e["stage"] for e in events if e["type"] == "step"]
    assert stages == ["analyzing", "installing", "applying"]

    complete = events[-1]
    assert complete["type"] == "complete"
    assert complete["results"]["filesCreated"] == ["src/App.jsx"]
    assert complete["results"]["packagesInstalled"] == ["clsx"]
    assert complete["refreshDelay"] == 5000
