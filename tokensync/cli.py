"""Command-line interface for token sync."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from .apply import apply
from .changeset import MutationBatch
from .config import load_config
from .diff import diff
from .errors import ResolutionError, TokenSyncError
from .resolve import Resolution, resolve_all
from .store import JsonFileTokenStore
from .sync import bulk_import, load_remote_file, run_sync
from .types import ChangeOrigin, Divergence

logger = logging.getLogger("tokensync")

ORIGINS = [o.value for o in ChangeOrigin]


LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def setup_logging(verbosity: int) -> None:
    logger.setLevel(LOG_LEVELS.get(verbosity, logging.DEBUG))
    # Replace rather than stack handlers when invoked repeatedly in one process.
    for old in list(logger.handlers):
        logger.removeHandler(old)
    handler = logging.StreamHandler()
    formatter = logging.Formatter("%(levelname)s: %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


def export_diagnostics(diagnostics: List[Dict[str, Any]], path: Path) -> None:
    """Export diagnostics to JSON file."""
    output = {"diagnostics": diagnostics}
    with open(path, "w", encoding="utf-8") as f:
        json.dump(output, f, indent=2)
    count = len(diagnostics)
    if count > 0:
        logger.info(f"Saved {count} diagnostic(s) to {path}")


def fail(error: TokenSyncError) -> None:
    click.echo(f"Error ({error.kind}): {error}", err=True)
    sys.exit(1)


def parse_choice(text: str) -> Tuple[str, Resolution]:
    """Parse KEY=keep|remote|value:<v>."""
    if "=" not in text:
        raise click.BadParameter(f"expected KEY=CHOICE, got {text!r}")
    key, choice = text.split("=", 1)
    if choice == "keep":
        return key, Resolution.keep_local()
    if choice == "remote":
        return key, Resolution.use_remote()
    if choice.startswith("value:"):
        try:
            return key, Resolution.explicit(choice[len("value:"):])
        except ResolutionError as e:
            raise click.BadParameter(str(e))
    raise click.BadParameter(f"choice must be keep, remote or value:<v>, got {choice!r}")


def build_resolutions(
    divergences: Tuple[Divergence, ...],
    choices: Tuple[str, ...],
    default: Optional[str],
) -> Dict[str, Resolution]:
    resolutions = dict(parse_choice(c) for c in choices)
    if default:
        for d in divergences:
            if d.key in resolutions:
                continue
            if default == "remote" and not d.remote_valid:
                logger.warning(f"Not adopting invalid remote value for {d.token_name}")
                continue
            resolutions[d.key] = (
                Resolution.use_remote() if default == "remote" else Resolution.keep_local()
            )
    return resolutions


@click.group()
@click.option(
    "--store",
    "store_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default="tokens.json",
    envvar="TOKENSYNC_STORE",
    show_default=True,
    help="JSON token store file.",
)
@click.option("--project", default="default", show_default=True, help="Project id.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON sync config.",
)
@click.option("-v", "--verbose", "verbosity", count=True, help="-v for INFO, -vv for DEBUG.")
@click.pass_context
def cli(
    ctx: click.Context,
    store_path: Path,
    project: str,
    config_path: Optional[Path],
    verbosity: int,
) -> None:
    """Synchronize design tokens with Figma variables."""
    setup_logging(verbosity)
    try:
        ctx.obj = {
            "store": JsonFileTokenStore(store_path),
            "project": project,
            "config": load_config(config_path),
        }
    except TokenSyncError as e:
        fail(e)


@cli.command("diff")
@click.argument("remote", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--diagnostics",
    "diagnostics_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write diagnostics JSON to this file.",
)
@click.pass_obj
def diff_command(obj: Dict[str, Any], remote: Path, diagnostics_path: Optional[Path]) -> None:
    """Print divergences between REMOTE and the local store as JSON."""
    try:
        snapshot = load_remote_file(remote)
        result = run_sync(snapshot, obj["store"], obj["project"], obj["config"])
    except TokenSyncError as e:
        fail(e)
    if diagnostics_path:
        export_diagnostics(result.diagnostics, diagnostics_path)
    echo_json(result.to_dict())


@cli.command()
@click.argument("remote", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--choose", "choices", multiple=True, metavar="KEY=CHOICE",
              help="keep, remote or value:<v> for one divergence key.")
@click.option("--all", "default", type=click.Choice(["keep", "remote"]),
              help="Choice for every divergence without --choose.")
@click.option("--origin", type=click.Choice(ORIGINS), default="MANUAL", show_default=True)
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path),
              help="Write the plan here instead of stdout.")
@click.pass_obj
def plan(
    obj: Dict[str, Any],
    remote: Path,
    choices: Tuple[str, ...],
    default: Optional[str],
    origin: str,
    output: Optional[Path],
) -> None:
    """Write a mutation plan for the chosen resolutions."""
    try:
        snapshot = load_remote_file(remote)
        local = obj["store"].read_local_snapshot(obj["project"])
        divergences = diff(snapshot, local, obj["config"])
        resolutions = build_resolutions(divergences, choices, default)
        batch = resolve_all(
            obj["project"], divergences, resolutions, ChangeOrigin(origin), obj["config"]
        )
    except TokenSyncError as e:
        fail(e)
    text = batch.to_plaintext()
    if output:
        output.write_text(text)
        click.echo(f"Wrote {len(batch.effective)} mutation(s) to {output}")
    else:
        click.echo(text, nl=False)


@cli.command("apply")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user", help="Acting user, recorded for human origins.")
@click.pass_obj
def apply_command(obj: Dict[str, Any], plan_file: Path, user: Optional[str]) -> None:
    """Apply a plan written by `plan`."""
    try:
        batch = MutationBatch.from_plaintext(plan_file.read_text())
    except ValueError as e:
        raise click.BadParameter(f"{plan_file}: {e}")
    if batch.project_id != obj["project"]:
        raise click.BadParameter(
            f"plan targets project {batch.project_id}, not {obj['project']}",
            param_hint="PLAN_FILE",
        )
    try:
        result = apply(obj["store"], batch, user=user)
    except TokenSyncError as e:
        fail(e)
    echo_json(result.summary())


@cli.command("import")
@click.argument("remote", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--collection", help="Only import this collection (id or name).")
@click.option("--origin", type=click.Choice(ORIGINS), default="MANUAL", show_default=True)
@click.option("--user", help="Acting user, recorded for human origins.")
@click.pass_obj
def import_command(
    obj: Dict[str, Any],
    remote: Path,
    collection: Optional[str],
    origin: str,
    user: Optional[str],
) -> None:
    """Adopt every remote variable into the project."""
    try:
        snapshot = load_remote_file(remote)
        result = bulk_import(
            snapshot,
            obj["store"],
            obj["project"],
            obj["config"],
            collection=collection,
            actor=ChangeOrigin(origin),
            user=user,
        )
    except TokenSyncError as e:
        fail(e)
    echo_json(result.to_dict())


@cli.command()
@click.option("--token", "token_id", help="Only entries for this token id.")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=100), default=20, show_default=True)
@click.pass_obj
def history(obj: Dict[str, Any], token_id: Optional[str], page: int, limit: int) -> None:
    """Show change history, newest first."""
    result = obj["store"].history(obj["project"], token_id=token_id, page=page, limit=limit)
    entries: List[Dict[str, Any]] = [e.to_dict() for e in result.entries]
    echo_json(
        {
            "entries": entries,
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "pages": result.pages,
            },
        }
    )


@cli.command()
@click.pass_obj
def stats(obj: Dict[str, Any]) -> None:
    """Show token counts by type and category."""
    echo_json(obj["store"].stats(obj["project"]))


if __name__ == "__main__":
    cli()
