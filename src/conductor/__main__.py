"""Conductor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# ── Default template for `conductor init` ────────────────────────────────────

_DEFAULT_CONFIG = """\
# conductor.yaml — Conductor service configuration

server:
  ui_uri: "http://localhost:4200"

webhooks:
  # SCM user whose token is used when the acting user has none registered
  username: "{username}"
  ignore_commits_by: []
  # none | all | branch | fork
  default_restrict_pr: none

scm:
  context: "github:github.com"
  display_name: GitHub
  api_url: "https://api.github.com"
  config_path: conductor.yaml

auth:
  # "<scmContext>:<username>"
  admins: []

notifications:
  webhook_urls: []

database:
  path: .conductor-data/conductor.db
"""


def _init_project(config_path: Path, username: str) -> None:
    """Write a default conductor.yaml."""
    if config_path.exists():
        print(f"Error: {config_path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    config_path.write_text(_DEFAULT_CONFIG.format(username=username))

    print(f"Initialized Conductor config at {config_path}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_path}")
    print("  2. Set environment variables (CONDUCTOR_JWT_SECRET, CONDUCTOR_WEBHOOK_SECRET)")
    print(f"  3. Register the generic user: conductor user add {username} --token <scm token>")
    print("  4. Run: conductor serve")


async def _add_user(config_path: Path, username: str, token: str, scm_context: str | None) -> None:
    from conductor.config import load_config
    from conductor.models import User
    from conductor.registry import Registry

    config = load_config(config_path)
    Path(config.database.path).parent.mkdir(parents=True, exist_ok=True)
    registry = Registry(config.database.path)
    await registry.initialize()
    try:
        user = await registry.create_user(
            User(username=username, scm_context=scm_context or config.scm.context, token=token)
        )
    finally:
        await registry.close()
    print(f"Registered user {user.scm_context}:{user.username}")


async def _add_pipeline(config_path: Path, checkout_url: str, token: str, sync: bool) -> None:
    from conductor.config import load_config
    from conductor.models import Pipeline
    from conductor.registry import Registry
    from conductor.scm import GitHubScm
    from conductor.sync import PipelineSyncer

    config = load_config(config_path)
    Path(config.database.path).parent.mkdir(parents=True, exist_ok=True)
    registry = Registry(config.database.path)
    scm = GitHubScm(
        scm_context=config.scm.context,
        display_name=config.scm.display_name,
        api_url=config.scm.api_url,
        host=config.scm.host,
        config_path=config.scm.config_path,
    )
    await registry.initialize()
    await scm.start()
    try:
        scm_uri = await scm.parse_url(checkout_url, token, config.scm.context)
        pipeline = await registry.get_pipeline_by_scm_uri(scm_uri)
        if pipeline is None:
            pipeline = await registry.create_pipeline(
                Pipeline(scm_uri=scm_uri, scm_context=config.scm.context, token=token)
            )
        if sync:
            pipeline = await PipelineSyncer(registry, scm).sync(pipeline)
    finally:
        await scm.close()
        await registry.close()
    print(f"Pipeline {pipeline.id}: {pipeline.scm_uri}")


def _mint_token(config_path: Path, username: str, scope: list[str], ttl: int) -> None:
    from conductor.auth import create_token
    from conductor.config import load_config

    config = load_config(config_path)
    if not config.auth.jwt_secret:
        print("Error: CONDUCTOR_JWT_SECRET is not set", file=sys.stderr)
        sys.exit(1)
    print(
        create_token(
            config.auth.jwt_secret,
            username,
            config.scm.context,
            scope,
            algorithm=config.auth.jwt_algorithm,
            ttl_seconds=ttl,
        )
    )


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Conductor — CI orchestration for build lifecycles and SCM webhooks",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("conductor.yaml"),
        help="Path to conductor.yaml (default: ./conductor.yaml)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # conductor init
    init_parser = subparsers.add_parser("init", help="Write a default conductor.yaml")
    init_parser.add_argument(
        "--username",
        default="conductor-bot",
        help="Generic SCM user for webhook lookups (default: conductor-bot)",
    )

    # conductor serve
    serve_parser = subparsers.add_parser("serve", help="Start the Conductor API server")
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # conductor user add
    user_parser = subparsers.add_parser("user", help="Manage SCM users")
    user_sub = user_parser.add_subparsers(dest="user_command", required=True)
    user_add = user_sub.add_parser("add", help="Register a user and their SCM token")
    user_add.add_argument("username")
    user_add.add_argument("--token", required=True, help="SCM access token")
    user_add.add_argument("--scm-context", help="SCM context (default: scm.context)")

    # conductor pipeline add
    pipeline_parser = subparsers.add_parser("pipeline", help="Manage pipelines")
    pipeline_sub = pipeline_parser.add_subparsers(dest="pipeline_command", required=True)
    pipeline_add = pipeline_sub.add_parser("add", help="Register a pipeline for a branch")
    pipeline_add.add_argument("checkout_url", help="Checkout URL, optionally with #branch")
    pipeline_add.add_argument("--token", required=True, help="SCM token for the pipeline")
    pipeline_add.add_argument(
        "--no-sync", action="store_true", help="Skip reading the definition file"
    )

    # conductor token
    token_parser = subparsers.add_parser("token", help="Mint an API token")
    token_parser.add_argument("username", help="Username, or build id for build tokens")
    token_parser.add_argument(
        "--scope",
        action="append",
        default=None,
        help="Token scope, repeatable (default: user)",
    )
    token_parser.add_argument("--ttl", type=int, default=3600, help="Lifetime in seconds")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.config, args.username)
        return

    logging.basicConfig(
        level=getattr(logging, getattr(args, "log_level", "WARNING")),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "user":
        asyncio.run(_add_user(args.config, args.username, args.token, args.scm_context))
        return

    if args.command == "pipeline":
        asyncio.run(_add_pipeline(args.config, args.checkout_url, args.token, not args.no_sync))
        return

    if args.command == "token":
        _mint_token(args.config, args.username, args.scope or ["user"], args.ttl)
        return

    if not args.config.exists():
        print(f"Error: {args.config} not found", file=sys.stderr)
        print("Run 'conductor init' to create one, or pass --config", file=sys.stderr)
        sys.exit(1)

    # Create and run app
    import uvicorn

    from conductor.server import create_app

    app = create_app(config_path=args.config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
