"""
Daytona sandbox management: run generated React apps behind a live preview URL.
Uses the `daytona` package with the process.exec() / fs.upload_file() API.

Every sandbox gets a Vite + React + Tailwind project, its dependencies
installed and the dev server started before the URL is handed out.
Sandboxes auto-stop after `sandbox_ttl_minutes` of inactivity.
"""

import asyncio
import shlex
import time

from daytona import Daytona, DaytonaConfig, CreateSandboxFromSnapshotParams
from loguru import logger

from sitebuilder.config import get_settings
from sitebuilder.exceptions import MissingApiKeyError, SandboxError
from sitebuilder.models import SandboxData

PROJECT_PATH = "/home/daytona/app"
DEV_PORT = 5173
LOG_FILE = f"{PROJECT_PATH}/server.log"

# Active sandbox tracking (sandbox_id → {"url", "created_at", "api_key"})
active_sandboxes: dict = {}


# ── Template Files ───────────────────────────────────────────────────────────

PACKAGE_JSON = '''{
  "name": "sandbox-app",
  "version": "1.0.0",
  "private": true,
  "type": "module",
  "scripts": {
    "dev": "vite --host 0.0.0.0 --port 5173",
    "build": "vite build",
    "preview": "vite preview"
  },
  "dependencies": {
    "react": "^18.3.1",
    "react-dom": "^18.3.1"
  },
  "devDependencies": {
    "@vitejs/plugin-react": "^4.3.4",
    "vite": "^5.4.11",
    "tailwindcss": "^3.4.17",
    "postcss": "^8.4.49",
    "autoprefixer": "^10.4.20"
  }
}'''

VITE_CONFIG = '''import { defineConfig } from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({
  plugins: [react()],
  server: {
    host: '0.0.0.0',
    port: 5173,
    strictPort: true,
    hmr: false,
    allowedHosts: true,
  },
})'''

TAILWIND_CONFIG = '''/** @type {import('tailwindcss').Config} */
export default {
  content: ['./index.html', './src/**/*.{js,jsx,ts,tsx}'],
  theme: { extend: {} },
  plugins: [],
}'''

POSTCSS_CONFIG = '''export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}'''

INDEX_HTML = '''<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Sandbox App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.jsx"></script>
  </body>
</html>'''

MAIN_JSX = '''import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.jsx'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)'''

APP_JSX = '''function App() {
  return (
    <div className="min-h-screen flex items-center justify-center bg-gray-900 text-white">
      <p className="text-lg text-gray-400">Sandbox ready. Start building!</p>
    </div>
  )
}

export default App'''

INDEX_CSS = '''@tailwind base;
@tailwind components;
@tailwind utilities;
'''

TEMPLATE_FILES = {
    "package.json": PACKAGE_JSON,
    "vite.config.js": VITE_CONFIG,
    "tailwind.config.js": TAILWIND_CONFIG,
    "postcss.config.js": POSTCSS_CONFIG,
    "index.html": INDEX_HTML,
    "src/main.jsx": MAIN_JSX,
    "src/App.jsx": APP_JSX,
    "src/index.css": INDEX_CSS,
}

# Root-level files that stay outside src/
ROOT_FILES = frozenset(TEMPLATE_FILES) - {"src/main.jsx", "src/App.jsx", "src/index.css"}

_TRANSIENT_ERRORS = (
    "timeout", "connection", "unavailable", "not running",
    "not ready", "refused", "reset", "broken pipe", "eof",
    "resource", "busy", "temporary",
)


# ── Client helpers ───────────────────────────────────────────────────────────

def _get_api_key(api_key: str | None = None) -> str:
    api_key = api_key or get_settings().daytona_api_key
    if not api_key:
        raise MissingApiKeyError("Daytona")
    return api_key


def get_daytona_client(api_key: str | None = None) -> Daytona:
    """Get a configured Daytona client."""
    return Daytona(DaytonaConfig(api_key=_get_api_key(api_key)))


def _get_iframe_preview_url(sandbox, port: int) -> str:
    """Preview URL suitable for iframe embedding, signed when possible."""
    try:
        signed = sandbox.create_signed_preview_url(port, expires_in_seconds=7200)
        return signed.url if hasattr(signed, "url") else str(signed)
    except Exception as e:
        logger.debug(f"[sandbox] Signed preview URL unavailable ({e}), using preview link")
        return sandbox.get_preview_link(port).url


def _exec(sandbox, cmd: str, timeout: int = 60, retries: int = 4):
    """Run a command with retry on transient errors."""
    for attempt in range(retries):
        try:
            return sandbox.process.exec(cmd, timeout=timeout)
        except Exception as e:
            err_msg = str(e).lower()
            is_transient = any(kw in err_msg for kw in _TRANSIENT_ERRORS)
            if attempt < retries - 1 and is_transient:
                wait = 5 * (attempt + 1)  # 5s, 10s, 15s
                logger.warning(f"[sandbox] Command failed ({e}), retrying in {wait}s ({attempt + 1}/{retries})")
                time.sleep(wait)
            else:
                raise


def _upload(sandbox, files: dict[str, str], project_root: str = PROJECT_PATH) -> None:
    dirs = sorted({f"{project_root}/{fp}".rsplit("/", 1)[0] for fp in files})
    if dirs:
        sandbox.process.exec(f"mkdir -p {' '.join(shlex.quote(d) for d in dirs)}", timeout=10)
    for fp, content in files.items():
        sandbox.fs.upload_file(content.encode("utf-8"), f"{project_root}/{fp}")


def _start_dev_server(sandbox, project_root: str = PROJECT_PATH) -> None:
    sandbox.process.exec("pkill -f vite || true", timeout=10)
    sandbox.process.exec(
        f"cd {project_root} && nohup npm run dev > {LOG_FILE} 2>&1 &",
        timeout=10,
    )


def _wait_for_dev_server(sandbox, attempts: int = 30) -> bool:
    for _ in range(attempts):
        time.sleep(2)
        try:
            logs = sandbox.process.exec(f"tail -20 {LOG_FILE} 2>/dev/null", timeout=5)
            log_text = (logs.result or "").lower()
            if "ready in" in log_text or "localhost:" in log_text:
                return True
        except Exception as e:
            logger.debug(f"[sandbox] Dev server check failed: {e}")
    return False


# ── Provisioning ─────────────────────────────────────────────────────────────

async def create_sandbox(api_key: str | None = None) -> SandboxData:
    """
    Create a Daytona sandbox running the Vite React template.

    Uploads TEMPLATE_FILES, runs npm install, starts the dev server and
    returns the sandbox id with its iframe preview URL. The whole creation
    is retried once.
    """
    api_key = _get_api_key(api_key)
    settings = get_settings()

    def _create() -> SandboxData:
        daytona = get_daytona_client(api_key)

        logger.info("[sandbox] Provisioning cloud sandbox...")
        params = CreateSandboxFromSnapshotParams(
            language="javascript",
            public=True,
            auto_stop_interval=settings.sandbox_ttl_minutes,
        )
        sandbox = daytona.create(params, timeout=120)

        # The container can still be booting when create() returns
        for attempt in range(30):
            try:
                ready = sandbox.process.exec("echo ready", timeout=10)
                if ready.result and "ready" in ready.result:
                    logger.info(f"[sandbox] Responsive after {(attempt + 1) * 2}s")
                    break
            except Exception as check_err:
                if attempt % 5 == 4:
                    logger.info(f"[sandbox] Still waiting ({(attempt + 1) * 2}s, last error: {check_err})")
            time.sleep(2)
        else:
            logger.warning("[sandbox] Not responsive after 60s, proceeding anyway")

        logger.info("[sandbox] Uploading Vite React template...")
        _upload(sandbox, TEMPLATE_FILES)

        logger.info("[sandbox] Running npm install...")
        install = _exec(sandbox, f"cd {PROJECT_PATH} && npm install --legacy-peer-deps 2>&1", timeout=180)
        if install.exit_code != 0:
            raise SandboxError(f"npm install failed: {(install.result or '')[-500:]}")

        _start_dev_server(sandbox)
        if _wait_for_dev_server(sandbox):
            logger.info("[sandbox] Vite dev server ready")
        else:
            logger.warning("[sandbox] Timeout waiting for Vite, proceeding anyway")

        url = _get_iframe_preview_url(sandbox, DEV_PORT)
        return SandboxData(sandbox_id=sandbox.id, url=url)

    try:
        data = await asyncio.to_thread(_create)
    except MissingApiKeyError:
        raise
    except Exception as first_err:
        logger.warning(f"[sandbox] Creation failed ({first_err}), retrying...")
        try:
            data = await asyncio.to_thread(_create)
        except Exception:
            raise first_err

    active_sandboxes[data.sandbox_id] = {"url": data.url, "created_at": time.time(), "api_key": api_key}
    logger.info(f"[sandbox] Ready: {data.sandbox_id[:12]} at {data.url}")
    return data


async def get_sandbox_status(sandbox_id: str, api_key: str | None = None) -> dict:
    """Report whether a sandbox still exists and its dev server answers."""
    api_key = _get_api_key(api_key)

    def _status() -> dict:
        try:
            sb = get_daytona_client(api_key).get(sandbox_id)
        except Exception as e:
            logger.info(f"[sandbox] {sandbox_id[:12]} not reachable: {e}")
            return {"active": False, "healthy": False, "sandboxId": sandbox_id, "url": None}
        healthy = False
        try:
            result = sb.process.exec(
                f"curl -s -o /dev/null -w '%{{http_code}}' http://localhost:{DEV_PORT}/",
                timeout=10,
            )
            healthy = (result.result or "").strip() == "200"
        except Exception as e:
            logger.debug(f"[sandbox] Health check failed for {sandbox_id[:12]}: {e}")
        url = active_sandboxes.get(sandbox_id, {}).get("url") or _get_iframe_preview_url(sb, DEV_PORT)
        return {"active": True, "healthy": healthy, "sandboxId": sandbox_id, "url": url}

    return await asyncio.to_thread(_status)


async def write_files(sandbox_id: str, files: dict[str, str], api_key: str | None = None) -> tuple[list[str], list[str]]:
    """
    Upload files into the project. Retries on transient errors.

    Returns (created, updated) path lists.
    """
    api_key = _get_api_key(api_key)

    def _write() -> tuple[list[str], list[str]]:
        last_err = None
        for attempt in range(3):
            try:
                sb = get_daytona_client(api_key).get(sandbox_id)
                created, updated = [], []
                for fp in files:
                    check = sb.process.exec(
                        f"test -f {shlex.quote(f'{PROJECT_PATH}/{fp}')} && echo exists || echo missing",
                        timeout=5,
                    )
                    (updated if "exists" in (check.result or "") else created).append(fp)
                _upload(sb, files)
                return created, updated
            except Exception as e:
                last_err = e
                logger.warning(f"[upload] Attempt {attempt + 1}/3 failed: {e}")
                if attempt < 2:
                    time.sleep(3)
        raise SandboxError(f"File upload failed: {last_err}")

    return await asyncio.to_thread(_write)


async def install_packages(sandbox_id: str, packages: list[str], api_key: str | None = None) -> dict:
    """
    npm install the given packages.

    When the batch install fails each package is retried alone so the
    result can say exactly which ones failed.
    """
    api_key = _get_api_key(api_key)
    if not packages:
        return {"installed": [], "failed": [], "output": ""}

    def _install() -> dict:
        sb = get_daytona_client(api_key).get(sandbox_id)
        names = " ".join(shlex.quote(p) for p in packages)
        result = _exec(sb, f"cd {PROJECT_PATH} && npm install --legacy-peer-deps {names} 2>&1", timeout=180)
        output = result.result or ""
        if result.exit_code == 0:
            return {"installed": list(packages), "failed": [], "output": output}

        installed, failed = [], []
        for pkg in packages:
            single = _exec(sb, f"cd {PROJECT_PATH} && npm install --legacy-peer-deps {shlex.quote(pkg)} 2>&1", timeout=120)
            (installed if single.exit_code == 0 else failed).append(pkg)
            output += single.result or ""
        return {"installed": installed, "failed": failed, "output": output}

    return await asyncio.to_thread(_install)


async def run_command(sandbox_id: str, command: str, api_key: str | None = None, timeout: int = 120) -> tuple[int, str]:
    """Run a shell command in the project directory. Returns (exit_code, output)."""
    api_key = _get_api_key(api_key)

    def _run() -> tuple[int, str]:
        sb = get_daytona_client(api_key).get(sandbox_id)
        result = _exec(sb, f"cd {PROJECT_PATH} && {command} 2>&1", timeout=timeout)
        return result.exit_code, result.result or ""

    return await asyncio.to_thread(_run)


async def restart_dev_server(sandbox_id: str, api_key: str | None = None) -> None:
    api_key = _get_api_key(api_key)

    def _restart():
        sb = get_daytona_client(api_key).get(sandbox_id)
        _start_dev_server(sb)

    await asyncio.to_thread(_restart)


async def get_sandbox_logs(sandbox_id: str, api_key: str | None = None, lines: int = 100) -> str:
    """Vite dev server output from the sandbox."""
    api_key = _get_api_key(api_key)

    def _get() -> str:
        sb = get_daytona_client(api_key).get(sandbox_id)
        result = sb.process.exec(f"tail -{int(lines)} {LOG_FILE} 2>/dev/null || echo 'No logs yet'", timeout=15)
        return result.result or ""

    return await asyncio.to_thread(_get)


async def kill_sandbox(sandbox_id: str, api_key: str | None = None) -> None:
    """Delete a Daytona sandbox and forget it."""
    api_key = _get_api_key(api_key)

    def _delete():
        daytona = get_daytona_client(api_key)
        daytona.delete(daytona.get(sandbox_id))

    await asyncio.to_thread(_delete)
    active_sandboxes.pop(sandbox_id, None)
    logger.info(f"[sandbox] {sandbox_id[:12]} deleted")


# ---------------------------------------------------------------------------
# Background sandbox monitor: forgets sandboxes Daytona has stopped
# ---------------------------------------------------------------------------

async def _sandbox_monitor_loop(interval: float = 5 * 60):
    while True:
        await asyncio.sleep(interval)
        sandbox_ids = list(active_sandboxes.keys())
        if not sandbox_ids:
            continue
        logger.info(f"[sandbox-monitor] Checking {len(sandbox_ids)} sandbox(es)...")
        for sid in sandbox_ids:
            info = active_sandboxes.get(sid, {})
            try:
                status = await get_sandbox_status(sid, info.get("api_key"))
            except Exception as e:
                logger.warning(f"[sandbox-monitor] Error checking {sid[:12]}: {e}")
                continue
            if not status["active"]:
                logger.info(f"[sandbox-monitor] {sid[:12]} is stopped or gone, forgetting it")
                active_sandboxes.pop(sid, None)
            else:
                age_minutes = (time.time() - info.get("created_at", time.time())) / 60
                logger.debug(f"[sandbox-monitor] {sid[:12]} alive ({age_minutes:.0f}m old)")


def start_sandbox_monitor() -> asyncio.Task:
    """Start the sandbox monitor background task. Call from server lifespan."""
    return asyncio.create_task(_sandbox_monitor_loop())
