"""CLI utilities shared by the commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import NoReturn

import click

from cataloger.config import CatalogerConfig, get_kb_path, load_config
from cataloger.config.constants import EXIT_FATAL
from cataloger.core.errors import CatalogerError
from cataloger.core.logging import configure_logging
from cataloger.core.progress import status
from cataloger.kb import KnowledgeBaseStore


def fail(error: CatalogerError, *, as_json: bool, exit_code: int = EXIT_FATAL) -> NoReturn:
    """Report an error and exit."""
    if as_json:
        click.echo(json.dumps({"error": error.to_dict(), "exit_code": exit_code}))
    else:
        status(error.message, style="error")
    raise SystemExit(exit_code)


def load_repo_config(ctx: click.Context, repo_root: Path, *, as_json: bool) -> CatalogerConfig:
    """Load config for ``repo_root`` and reconfigure logging from it."""
    try:
        config = load_config(repo_root)
    except CatalogerError as e:
        fail(e, as_json=as_json)
    if ctx.obj and ctx.obj.get("verbose"):
        config.logging.level = "DEBUG"
    configure_logging(config=config.logging)
    return config


def open_store(repo_root: Path, config: CatalogerConfig, *, as_json: bool) -> KnowledgeBaseStore:
    """Open the knowledge base or exit with the fatal code."""
    try:
        return KnowledgeBaseStore.open(get_kb_path(repo_root, config), config.knowledge_base)
    except CatalogerError as e:
        fail(e, as_json=as_json)
