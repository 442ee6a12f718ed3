from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import ConfigDict

from sitebuilder import api_keys, code_applier, generator, llm, sandbox, scraper
from sitebuilder.config import get_settings
from sitebuilder.exceptions import GenerationError, MissingApiKeyError
from sitebuilder.log import setup_logging
from sitebuilder.models import WireModel
from sitebuilder.sse_utils import SSE_HEADERS


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(get_settings().log_level)
    # Startup: sandbox status checker
    monitor = None
    try:
        monitor = sandbox.start_sandbox_monitor()
    except Exception as e:
        logger.error(f"[sandbox-monitor] Failed to start: {e}")
    yield
    if monitor is not None:
        monitor.cancel()


app = FastAPI(title="Site Builder API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Models: extra fields carry the <provider>ApiKey body keys
# ---------------------------------------------------------------------------

class KeyedRequest(WireModel):
    model_config = ConfigDict(extra="allow")

    def key_fields(self) -> dict:
        return dict(self.model_extra or {})


class UrlRequest(KeyedRequest):
    url: str = ""


class SandboxRequest(KeyedRequest):
    sandbox_id: str = ""


class GenerateRequest(KeyedRequest):
    prompt: str = ""
    model: str = ""
    context: dict = {}
    is_edit: bool = False


class ApplyRequest(KeyedRequest):
    response: str = ""
    sandbox_id: str = ""
    packages: list[str] = []
    is_edit: bool = False


class ValidateKeyRequest(WireModel):
    provider: str
    api_key: str = ""


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _sse(events) -> StreamingResponse:
    return StreamingResponse(events, media_type="text/event-stream", headers=SSE_HEADERS)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Backend is running"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/config")
async def config():
    """Model registry and refresh timing for clients. Never includes secrets."""
    settings = get_settings()
    return {
        "availableModels": settings.available_models,
        "defaultModel": settings.default_model,
        "modelDisplayNames": settings.model_display_names,
        "defaultRefreshDelay": settings.default_refresh_delay,
        "packageInstallRefreshDelay": settings.package_install_refresh_delay,
        "openrouterFreeModels": [m.to_wire() for m in api_keys.get_openrouter_free_models()],
    }


@app.post("/api/validate-api-key")
async def validate_api_key(request: ValidateKeyRequest):
    valid, error = await api_keys.verify_api_key(request.provider, request.api_key)
    return {"valid": valid, "error": error}


# -- scraping ---------------------------------------------------------------

@app.post("/api/scrape-url-enhanced")
async def scrape_url_enhanced(body: UrlRequest, request: Request):
    if not body.url:
        return _error(400, "URL is required")
    try:
        key = api_keys.require_api_key("firecrawl", request.headers, body.key_fields())
        return await scraper.scrape_url_enhanced(body.url, key)
    except MissingApiKeyError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"[scrape-url-enhanced] Error: {e}")
        return _error(500, str(e))


@app.post("/api/scrape-screenshot")
async def scrape_screenshot(body: UrlRequest, request: Request):
    if not body.url:
        return _error(400, "URL is required")
    try:
        key = api_keys.require_api_key("firecrawl", request.headers, body.key_fields())
        return await scraper.scrape_screenshot(body.url, key)
    except MissingApiKeyError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"[scrape-screenshot] Error: {e}")
        return _error(500, str(e))


# -- sandboxes --------------------------------------------------------------

@app.post("/api/create-ai-sandbox")
async def create_ai_sandbox(body: KeyedRequest, request: Request):
    try:
        key = api_keys.require_api_key("daytona", request.headers, body.key_fields())
        data = await sandbox.create_sandbox(key)
    except MissingApiKeyError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"[sandbox] Creation failed: {e}")
        return _error(500, str(e))
    return {"success": True, **data.to_wire()}


@app.get("/api/sandbox-status")
async def sandbox_status(request: Request, sandboxId: str = ""):
    if not sandboxId:
        return _error(400, "sandboxId is required")
    try:
        key = api_keys.require_api_key("daytona", request.headers)
        return {"success": True, **await sandbox.get_sandbox_status(sandboxId, key)}
    except MissingApiKeyError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"[sandbox] Status check failed: {e}")
        return _error(500, str(e))


@app.post("/api/kill-sandbox")
async def kill_sandbox(body: SandboxRequest, request: Request):
    if not body.sandbox_id:
        return _error(400, "sandboxId is required")
    try:
        key = api_keys.require_api_key("daytona", request.headers, body.key_fields())
        await sandbox.kill_sandbox(body.sandbox_id, key)
    except MissingApiKeyError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"[sandbox] Kill failed: {e}")
        return _error(500, str(e))
    return {"success": True, "sandboxId": body.sandbox_id}


@app.get("/api/sandbox-logs")
async def sandbox_logs(request: Request, sandboxId: str = "", lines: int = 100):
    if not sandboxId:
        return _error(400, "sandboxId is required")
    try:
        key = api_keys.require_api_key("daytona", request.headers)
        logs = await sandbox.get_sandbox_logs(sandboxId, key, lines=min(lines, 1000))
    except MissingApiKeyError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"[sandbox] Log fetch failed: {e}")
        return _error(500, str(e))
    return {"success": True, "logs": logs}


# -- generation -------------------------------------------------------------

@app.post("/api/generate-ai-code-stream")
async def generate_ai_code_stream(body: GenerateRequest, request: Request):
    """Stream generated code as SSE. Key problems are reported as 400 before streaming."""
    if not body.prompt:
        return _error(400, "Prompt is required")
    model = body.model or get_settings().default_model
    try:
        choice = llm.resolve_provider(model, body.context)
        if choice.provider == "openrouter" and body.context.get("apiKey"):
            key = body.context["apiKey"]
        else:
            key = api_keys.require_api_key(choice.provider, request.headers, body.key_fields())
    except (MissingApiKeyError, GenerationError) as e:
        return _error(400, str(e))

    logger.info(f"[generate] {model} via {choice.provider} (edit={body.is_edit})")
    return _sse(generator.generate_code_stream(
        body.prompt, model, choice, key, context=body.context, is_edit=body.is_edit
    ))


@app.post("/api/apply-ai-code-stream")
async def apply_ai_code_stream(body: ApplyRequest, request: Request):
    if not body.response:
        return _error(400, "response is required")
    if not body.sandbox_id:
        return _error(400, "sandboxId is required")
    try:
        key = api_keys.require_api_key("daytona", request.headers, body.key_fields())
    except MissingApiKeyError as e:
        return _error(400, str(e))

    return _sse(code_applier.apply_code_stream(
        body.response, body.sandbox_id, body.packages, is_edit=body.is_edit, api_key=key
    ))
