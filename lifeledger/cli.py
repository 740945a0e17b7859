# lifeledger/cli.py
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any
import click

from lifeledger.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from lifeledger.db import make_engine, ensure_schema
from lifeledger.errors import LifeLedgerError

from lifeledger.log import setup_logging
setup_logging()


@click.group()
def cli():
    """LifeLedger CLI: local-first personal knowledge store."""


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _fail(e: LifeLedgerError) -> click.ClickException:
    return click.ClickException(f"[{e.code}] {e.message}")


def _print_job(out) -> None:
    """Print a job outcome; a failed run exits 1."""
    click.echo(_dump(out.to_dict()))
    if not out.ok:
        raise SystemExit(1)


async def _open(s: Settings):
    eng, session_factory = make_engine(s.db_path)
    await ensure_schema(eng)
    return eng, session_factory


# ---------------------------------------------------------------------
# init: create default config + directories
# ---------------------------------------------------------------------
@cli.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config.toml if present.")
@click.option("--path", "cfg_path", default=DEFAULT_CONFIG_PATH, show_default=True, help="Where to write config.toml.")
@click.option("--data-dir", default="~/LifeLedger", show_default=True, help="Root directory for data.")
def init_command(force: bool, cfg_path: str, data_dir: str) -> None:
    """Create a default config.toml and the inbox/archive/reports directories."""
    import tomli_w

    path = Path(cfg_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    root = Path(data_dir).expanduser()
    default = {
        "data_dir": str(root),
        "inbox_dir": str(root / "inbox"),
        "archive_dir": str(root / "archive"),
        "reports_dir": str(root / "reports"),
        "remote_allowed": False,
        "llm_backend": "local",  # local | openai
        "request_timeout": 20.0,
        "background_timeout": 90.0,
        "report_min_entries": 5,
        "resonance_window_days": 3,
        "biography_ttl_hours": 24,
        "event_identity": "title",  # title | title_and_date
        "schedule": {"sweep_every_minutes": 60, "resonance": "02:00", "weekly_report": "Sun 23:00"},
    }

    if path.exists() and not force:
        click.echo(f"Config already exists at {path} (use --force to overwrite).")
    else:
        with open(path, "wb") as f:
            tomli_w.dump(default, f)
        click.echo(f"Wrote default config to {path}")

    dirs = [Path(default[k]) for k in ("inbox_dir", "archive_dir", "reports_dir")] + [root / ".lifeledger"]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
    click.echo("Created directories:")
    for d in dirs:
        click.echo(f"  - {d}")
    click.echo("Done.")


# ---------------------------------------------------------------------
# basics
# ---------------------------------------------------------------------
@cli.command()
def initdb():
    """Create the database schema if it is empty and show the DB path."""
    s = load_settings()

    async def go():
        eng, _ = await _open(s)
        await eng.dispose()
        click.echo(f"DB ready: {s.db_path}")

    asyncio.run(go())


# ---------------------------------------------------------------------
# write path
# ---------------------------------------------------------------------
@cli.command()
@click.argument("text")
@click.option("--source", type=click.Choice(["text", "voice", "chat", "document"]), default="text", show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print the full ingestion outcome.")
def ingest(text: str, source: str, as_json: bool):
    """Capture one entry and extract knowledge from it."""
    from lifeledger.llm.factory import get_gateway
    from lifeledger.services.ingest import ingest_entry

    s = load_settings()
    gateway = get_gateway(s)

    async def go():
        eng, sf = await _open(s)
        try:
            out = await ingest_entry(
                sf, gateway, text, source,
                timeout=s.request_timeout, recent=s.context_recent_entries,
            )
        except LifeLedgerError as e:
            raise _fail(e)
        finally:
            await eng.dispose()
        if as_json:
            click.echo(_dump(out.to_dict()))
        else:
            click.echo(_dump({"id": out.entry_id}))
            if out.status != "extracted":
                click.echo(f"note: entry saved, extraction {out.status}: {out.error['message']}", err=True)

    asyncio.run(go())


@cli.command()
@click.argument("entry_id")
@click.argument("text")
def reprocess(entry_id: str, text: str):
    """Re-extract an entry, replacing its derived data (TEXT may correct the entry)."""
    from lifeledger.llm.factory import get_gateway
    from lifeledger.services.ingest import reprocess_entry

    s = load_settings()
    gateway = get_gateway(s)

    async def go():
        eng, sf = await _open(s)
        try:
            out = await reprocess_entry(
                sf, gateway, entry_id, text,
                timeout=s.request_timeout, recent=s.context_recent_entries,
            )
        except LifeLedgerError as e:
            raise _fail(e)
        finally:
            await eng.dispose()
        click.echo(_dump(out.to_dict()))

    asyncio.run(go())


@cli.command()
@click.argument("text")
def chat(text: str):
    """Capture a chat message; extraction runs in the background."""
    from lifeledger.llm.factory import get_gateway
    from lifeledger.services.ingest import ingest_chat_message

    s = load_settings()
    gateway = get_gateway(s)

    async def go():
        eng, sf = await _open(s)
        try:
            entry_id, task = await ingest_chat_message(
                sf, gateway, text, timeout=s.background_timeout, recent=s.context_recent_entries,
            )
            click.echo(_dump({"id": entry_id}))
            # the process must outlive the task; its failure is logged by the task itself
            await asyncio.gather(task, return_exceptions=True)
        except LifeLedgerError as e:
            raise _fail(e)
        finally:
            await eng.dispose()

    asyncio.run(go())


@cli.command("extract-bg")
@click.argument("entry_id")
@click.argument("text")
def extract_bg(entry_id: str, text: str):
    """Run short-form extraction for an already captured entry."""
    from lifeledger.llm.factory import get_gateway
    from lifeledger.services.ingest import extract_in_background

    s = load_settings()
    gateway = get_gateway(s)

    async def go():
        eng, sf = await _open(s)
        try:
            report = await extract_in_background(
                sf, gateway, entry_id, text, timeout=s.background_timeout, recent=s.context_recent_entries,
            )
        except LifeLedgerError as e:
            return {"success": False, "error": e.to_dict()}
        finally:
            await eng.dispose()
        return {"success": True, "merge": report.to_dict()}

    result = asyncio.run(go())
    click.echo(_dump(result))
    if not result["success"]:
        raise SystemExit(1)


@cli.command()
@click.argument("entry_id")
def delete(entry_id: str):
    """Soft-delete an entry."""
    from lifeledger.services.entries import soft_delete_entry

    s = load_settings()

    async def go():
        eng, sf = await _open(s)
        try:
            async with sf() as session:
                await soft_delete_entry(session, entry_id)
                await session.commit()
        except LifeLedgerError as e:
            raise _fail(e)
        finally:
            await eng.dispose()
        click.echo(f"Deleted: {entry_id}")

    asyncio.run(go())


@cli.command("ingest-inbox")
def ingest_inbox_cmd():
    """Ingest every file in inbox_dir as a document, then archive it."""
    from lifeledger.llm.factory import get_gateway
    from lifeledger.services.ingest import ingest_inbox

    s = load_settings()
    gateway = get_gateway(s)

    async def go():
        eng, sf = await _open(s)
        try:
            out = await ingest_inbox(
                sf, gateway, s.inbox_dir, s.archive_dir,
                timeout=s.background_timeout, recent=s.context_recent_entries,
            )
        finally:
            await eng.dispose()
        if not (out.ingested or out.skipped or out.failed):
            click.echo("Inbox empty.")
            return
        for name, msg in out.failed.items():
            click.echo(f"FAILED: {name}: {msg}")
        click.echo(f"Done: {len(out.ingested)} ingested, {len(out.skipped)} skipped, {len(out.failed)} failed.")

    asyncio.run(go())


# ---------------------------------------------------------------------
# queries
# ---------------------------------------------------------------------
@cli.command("list")
@click.option(
    "--type", "kind",
    type=click.Choice(["entries", "tasks", "people", "life", "insights"]),
    default="entries", show_default=True,
)
def list_cmd(kind: str):
    """List entries, open tasks, people, the life timeline or insights."""
    from lifeledger.services import entries as q

    s = load_settings()
    fetch = {
        "entries": q.list_entries,
        "tasks": q.list_tasks,
        "people": q.list_people,
        "life": q.list_timeline,
        "insights": q.list_insights,
    }[kind]

    async def go():
        eng, sf = await _open(s)
        try:
            async with sf() as session:
                rows = await fetch(session)
        finally:
            await eng.dispose()
        click.echo(_dump(rows))

    asyncio.run(go())


@cli.command()
@click.argument("entity_id")
@click.argument("status", type=click.Choice(["pending", "done", "cancelled"]))
def task(entity_id: str, status: str):
    """Set a task's status."""
    from lifeledger.services.entries import set_task_status

    s = load_settings()

    async def go():
        eng, sf = await _open(s)
        try:
            async with sf() as session:
                row = await set_task_status(session, entity_id, status)
                await session.commit()
        except LifeLedgerError as e:
            raise _fail(e)
        finally:
            await eng.dispose()
        click.echo(f"{row.title}: {row.task_status}")

    asyncio.run(go())


# ---------------------------------------------------------------------
# jobs
# ---------------------------------------------------------------------
@cli.command()
@click.option("--dry-run", is_flag=True, help="Count what would be removed; change nothing.")
def sweep(dry_run: bool):
    """Consolidation sweep: remove duplicates and orphans."""
    from lifeledger.services.scheduler import job_sweep
    from lifeledger.services.sweeper import run_sweep

    s = load_settings()
    if not dry_run:
        _print_job(asyncio.run(job_sweep(s)))
        return

    async def go():
        eng, sf = await _open(s)
        try:
            return await run_sweep(sf, dry_run=True, event_identity=s.event_identity)
        finally:
            await eng.dispose()

    click.echo(_dump(asyncio.run(go()).to_dict()))


@cli.command()
@click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Pretend today is this date.")
def resonance(today):
    """Detect anniversaries of past life events."""
    from lifeledger.services.scheduler import job_resonance

    s = load_settings()
    _print_job(asyncio.run(job_resonance(s, today=today.date() if today else None)))


@cli.command("report")
@click.option("--week-start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="First day of the week; default is the 7 days ending today.")
def report_cmd(week_start):
    """Build the weekly report (write-once per week)."""
    from lifeledger.services.scheduler import job_weekly_report

    s = load_settings()
    _print_job(asyncio.run(job_weekly_report(s, week_start=week_start.date() if week_start else None)))


@cli.command()
@click.option("--regenerate", is_flag=True, help="Rebuild the narrative now.")
def biography(regenerate: bool):
    """Show the cached biography, or regenerate it."""
    from lifeledger.services.biography import read_biography
    from lifeledger.services.scheduler import job_biography_refresh

    s = load_settings()
    if regenerate:
        _print_job(asyncio.run(job_biography_refresh(s)))
        return

    async def go():
        eng, sf = await _open(s)
        try:
            return await read_biography(sf, ttl_hours=s.biography_ttl_hours)
        finally:
            await eng.dispose()

    view = asyncio.run(go())
    if view.biography is None:
        click.echo("No cached biography; run 'lifeledger biography --regenerate'.")
        return
    click.echo(view.biography)


# ---------------------------------------------------------------------
# automation
# ---------------------------------------------------------------------
@cli.command()
def watch():
    """Watch inbox_dir and ingest dropped files."""
    from lifeledger.services.watcher import run_watch
    run_watch()


@cli.command()
def schedule():
    """Run background scheduler (sweep, daily resonance, weekly report)."""
    from lifeledger.services.scheduler import run_scheduler
    run_scheduler()


@cli.command("doctor")
@click.option("--json", "as_json", is_flag=True, help="Output JSON summary.")
def doctor_cmd(as_json: bool) -> None:
    """Run diagnostics: config, schedule, DB schema, job history and pending sweep work."""
    from lifeledger.doctor import run_checks

    async def go():
        res = await run_checks()
        if as_json:
            click.echo(_dump(res.to_dict()))
            return
        click.echo("LifeLedger Doctor\n-----------------")
        click.echo(f"OK: {res.ok}")
        if res.errors:
            click.echo("Errors:")
            for e in res.errors:
                click.echo(f"  - {e}")
        if res.warnings:
            click.echo("Warnings:")
            for w in res.warnings:
                click.echo(f"  - {w}")
        d = res.details
        click.echo("Details:")
        for k in [
            "config.data_dir", "config.inbox_dir", "config.reports_dir", "config.llm_backend",
            "db.tables", "db.ping", "jobs.latest",
        ]:
            if k in d:
                click.echo(f"  {k}: {d[k]}")

    asyncio.run(go())


# allow `python -m lifeledger.cli ...` and console entry point
if __name__ == "__main__":
    cli()
