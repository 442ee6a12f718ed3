import argparse
import asyncio
import sys

from dotenv import load_dotenv

from sitebuilder.api_keys import (
    PROVIDERS,
    get_openrouter_free_models,
    get_openrouter_model_by_id,
    validate_key_format,
)
from sitebuilder.client import BuilderClient, BuilderSession
from sitebuilder.config import get_settings
from sitebuilder.exceptions import GenerationError
from sitebuilder.generation import GenerationState
from sitebuilder.llm import resolve_provider
from sitebuilder.log import logger, setup_logging
from sitebuilder.storage import ApiKeyStore, JsonFileStore, ProjectStore


def _mask(secret: str) -> str:
    return secret[:6] + "..." + secret[-4:] if len(secret) > 12 else "***"


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("sitebuilder.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


async def _build(args, store: JsonFileStore) -> int:
    settings = get_settings()
    keys = ApiKeyStore(store)
    model = args.model or settings.default_model
    if not settings.is_known_model(model):
        print(f"Unknown model {model}. See `sitebuilder models list`.")
        return 1
    model_name = args.model_name or keys.get_openrouter_model_name()
    try:
        choice = resolve_provider(model, {"modelName": model_name})
    except GenerationError as e:
        print(f"{e}. Pass --model-name or run `sitebuilder models use-openrouter MODEL_ID`.")
        return 1

    missing = keys.missing_keys([choice.provider, "daytona"])
    if missing:
        print(f"Missing API keys: {', '.join(missing)}. Use `sitebuilder keys set`.")
        return 1

    client = BuilderClient(args.backend, keys.get_all())
    session = BuilderSession(client, model=model, model_name=model_name)
    try:
        if args.sandbox:
            await session.restore_sandbox(args.sandbox)
        if args.url:
            await session.scrape(args.url)
        progress = await session.send_chat(args.prompt)
    finally:
        await client.aclose()

    for message in session.chat:
        print(f"[{message.type.value}] {message.content}")

    if progress.state is not GenerationState.COMPLETE:
        return 1

    project = ProjectStore(store).add(
        name=args.prompt[:60],
        description=progress.explanation,
        url=args.url or "",
        sandbox_id=session.sandbox.sandbox_id if session.sandbox else None,
        generated_code=session.last_generated_code,
        chat_history=list(session.chat),
    )
    print(f"Preview: {session.preview_refresh_url()}")
    print(f"Saved project {project.id}")
    return 0


def cmd_build(args) -> int:
    return asyncio.run(_build(args, JsonFileStore()))


def cmd_keys(args) -> int:
    keys = ApiKeyStore(JsonFileStore())
    if args.action == "show":
        stored = keys.get_all()
        for provider in PROVIDERS:
            print(f"{provider:<12} {_mask(stored[provider]) if provider in stored else '-'}")
        missing = keys.missing_required_keys()
        if missing:
            print(f"Missing required: {', '.join(missing)}")
    elif args.action == "set":
        ok, error = validate_key_format(args.provider, args.key)
        if not ok:
            print(error)
            return 1
        keys.save({args.provider: args.key})
        print(f"Saved {args.provider} key")
    else:
        keys.clear()
        print("Cleared stored API keys")
    return 0


def cmd_models(args) -> int:
    settings = get_settings()
    keys = ApiKeyStore(JsonFileStore())
    if args.action == "list":
        for model in settings.available_models:
            marker = "*" if model == settings.default_model else " "
            print(f"{marker} {model:<40} {settings.model_display_name(model)}")
        current = keys.get_openrouter_model_name()
        print(f"\n{settings.model_display_name('openrouter')} free models (--model openrouter):")
        for m in get_openrouter_free_models():
            marker = "*" if m.id == current else " "
            print(f"{marker} {m.id:<40} {m.name}, {m.context_length} token context")
        return 0
    if get_openrouter_model_by_id(args.model_id) is None:
        print(f"{args.model_id} is not in the free model catalog")
    keys.save_openrouter_model_name(args.model_id)
    print(f"OpenRouter model set to {args.model_id}")
    return 0


def cmd_projects(args) -> int:
    projects = ProjectStore(JsonFileStore())
    if args.action == "list":
        current = projects.current
        for p in projects.list():
            marker = "*" if current and current.id == p.id else " "
            print(f"{marker} {p.id}  {p.updated_at:%Y-%m-%d %H:%M}  {p.name}")
        return 0
    if not projects.delete(args.project_id):
        print(f"No project {args.project_id}")
        return 1
    print(f"Deleted {args.project_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitebuilder", description="Chat-driven React site builder")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the backend API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=cmd_serve)

    build = sub.add_parser("build", help="Generate a site from a prompt and apply it to a sandbox")
    build.add_argument("prompt", help="What to build, e.g. 'A portfolio for a photographer'")
    build.add_argument("--model", default=None, help="Model id (defaults to the configured default model)")
    build.add_argument("--model-name", default=None, help="OpenRouter model id when --model=openrouter (defaults to the stored one)")
    build.add_argument("--sandbox", default=None, help="Reuse an existing sandbox id")
    build.add_argument("--url", default=None, help="Scrape this site first and use it as reference")
    build.add_argument("--backend", default="http://localhost:8000", help="Backend base URL")
    build.set_defaults(func=cmd_build)

    keys = sub.add_parser("keys", help="Manage stored API keys")
    keys_sub = keys.add_subparsers(dest="action", required=True)
    keys_sub.add_parser("show")
    key_set = keys_sub.add_parser("set")
    key_set.add_argument("provider", choices=PROVIDERS)
    key_set.add_argument("key")
    keys_sub.add_parser("clear")
    keys.set_defaults(func=cmd_keys)

    models = sub.add_parser("models", help="List models and pick the OpenRouter model")
    models_sub = models.add_subparsers(dest="action", required=True)
    models_sub.add_parser("list")
    use_openrouter = models_sub.add_parser("use-openrouter")
    use_openrouter.add_argument("model_id", help="e.g. qwen/qwen3-coder:free")
    models.set_defaults(func=cmd_models)

    projects = sub.add_parser("projects", help="Manage saved projects")
    projects_sub = projects.add_subparsers(dest="action", required=True)
    projects_sub.add_parser("list")
    delete = projects_sub.add_parser("delete")
    delete.add_argument("project_id")
    projects.set_defaults(func=cmd_projects)

    return parser


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(get_settings().log_level)
    try:
        return args.func(args)
    except Exception as e:
        logger.error(f"An error occurred: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
