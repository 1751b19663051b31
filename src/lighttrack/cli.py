"""Command-line interface for the activity tracker."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from .config import EngineConfig
from .paths import get_db_path, get_log_path

app = typer.Typer(help="Local-first activity tracker.")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def _open_store(data_dir: Optional[Path]):  # type: ignore[no-untyped-def]
    from .security import create_cipher
    from .storage import ActivityStore

    config = EngineConfig()
    directory = data_dir or config.data_dir
    db_path = get_db_path(directory)
    return ActivityStore(db_path, cipher=create_cipher(db_path.parent, dev_mode=config.dev_mode))


@app.command()
def run(
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", path_type=Path, help="Directory holding the data file and logs."
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Interface for the browser extension server."),
    port: Optional[int] = typer.Option(
        None, "--port", min=1, max=65535, help="TCP port for the browser extension server."
    ),
    dev: bool = typer.Option(False, "--dev", help="Development mode: no encryption, token for extensions only."),
) -> None:
    """Track activity and serve the browser extension until interrupted."""
    from .server_runner import run_engine

    overrides = {"data_dir": data_dir, "host": host, "port": port}
    if dev:
        overrides["env"] = "development"
    config = EngineConfig(**{key: value for key, value in overrides.items() if value is not None})

    try:
        handler = logging.FileHandler(get_log_path(config.data_dir), encoding="utf-8")
    except OSError as exc:
        typer.echo(f"Unable to open the log file: {exc}", err=True)
        raise typer.Exit(code=1)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)

    level = logging.getLevelName(logging.getLogger().getEffectiveLevel()).lower()
    raise typer.Exit(code=run_engine(config, log_level=level))


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", path_type=Path, help="Directory holding the data file."
    ),
) -> None:
    """Print a high-level summary for a specific day."""
    from .reporting import SummaryPrinter

    target = datetime.strptime(date, "%Y-%m-%d") if date else datetime.now()
    store = _open_store(data_dir)
    try:
        SummaryPrinter(store).print_daily_summary(target.date())
    finally:
        store.close()


@app.command()
def consolidate(
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", path_type=Path, help="Directory holding the data file."
    ),
) -> None:
    """Merge and deduplicate stored activities."""
    store = _open_store(data_dir)
    try:
        removed = store.consolidate()
    finally:
        store.close()
    typer.echo(f"Consolidated {removed} activities.")


@app.command()
def export(
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", path_type=Path, help="File to write. Prints to stdout when omitted."
    ),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", path_type=Path, help="Directory holding the data file."
    ),
) -> None:
    """Dump activities, settings, mappings and catalogs as JSON."""
    store = _open_store(data_dir)
    try:
        payload = store.export_data(datetime.now())
    finally:
        store.close()
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text, encoding="utf-8")
    typer.echo(f"Exported {len(payload['activities'])} activities to {output}.")


@app.command("map")
def add_mapping(
    kind: str = typer.Argument(..., help="Mapping table: project, url, jira or meeting."),
    pattern: str = typer.Argument(..., help="Pattern, URL fragment, JIRA project key or meeting regex."),
    project: str = typer.Argument(..., help="Project the matching activity is assigned to."),
    activity: Optional[str] = typer.Option(None, "--activity", help="Activity type to assign."),
    sap_code: Optional[str] = typer.Option(None, "--sap-code", help="SAP code to assign."),
    cost_center: Optional[str] = typer.Option(None, "--cost-center", help="Cost center to assign."),
    wbs_element: Optional[str] = typer.Option(None, "--wbs-element", help="WBS element to assign."),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", path_type=Path, help="Directory holding the data file."
    ),
) -> None:
    """Add or replace a mapping rule."""
    extras = {"activity": activity, "sap_code": sap_code, "cost_center": cost_center, "wbs_element": wbs_element}
    extras = {key: value for key, value in extras.items() if value}
    value = {"project": project, **extras} if extras else project

    store = _open_store(data_dir)
    try:
        store.set_mapping(kind, pattern, value)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    finally:
        store.close()
    typer.echo(f"Mapped {kind} {pattern!r} to {project}.")


@app.command("unmap")
def remove_mapping(
    kind: str = typer.Argument(..., help="Mapping table: project, url, jira or meeting."),
    pattern: str = typer.Argument(..., help="Pattern to remove."),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", path_type=Path, help="Directory holding the data file."
    ),
) -> None:
    """Remove a mapping rule."""
    store = _open_store(data_dir)
    try:
        removed = store.remove_mapping(kind, pattern)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    finally:
        store.close()
    if not removed:
        typer.echo(f"No {kind} mapping for {pattern!r}.", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {kind} mapping {pattern!r}.")
