#!/usr/bin/env python3
"""
PropelAI Orchestrator CLI - Command Line Interface
==================================================

Commands:
  propelai serve                   Start the API server (runs the pipeline and monitor)
  propelai status <job_id>         Show job status, stage map and volumes
  propelai list [--status S]       List jobs
  propelai cancel <job_id>         Cancel a job
  propelai sweep                   Run one stall/timeout monitor pass
  propelai monitor                 Run the stall/timeout monitor until interrupted
  propelai estimate <file|bytes>  Estimate generation time for an RFP
"""

import sys
import os
import argparse
import asyncio
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from rich.console import Console
from rich.table import Table
from rich import box

from core.config import get_config
from core.errors import InvalidTransition, JobNotFound
from core.logging_setup import setup_logging
from core.orchestrator import estimate_generation_time
from core.state import JobStatus, utcnow
from pipeline.runtime import create_store
from pipeline.stall_monitor import StallMonitor

console = Console()

STATUS_STYLES = {
    JobStatus.COMPLETED.value: "green",
    JobStatus.NEEDS_REVISION.value: "yellow",
    JobStatus.BLOCKED.value: "yellow",
    JobStatus.REVIEW.value: "cyan",
    JobStatus.PROCESSING.value: "cyan",
    JobStatus.FAILED.value: "red",
    JobStatus.CANCELLED.value: "dim",
}


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


async def _with_store(fn):
    store, engine = create_store(get_config())
    try:
        return await fn(store)
    finally:
        if engine is not None:
            await engine.dispose()


def cmd_status(args):
    """Show one job"""
    async def run(store):
        job = await store.get_job(args.job_id)
        volumes = await store.list_volumes(args.job_id)
        return job, volumes

    try:
        job, volumes = asyncio.run(_with_store(run))
    except JobNotFound:
        console.print(f"Error: Job '{args.job_id}' not found", style="red")
        sys.exit(1)

    console.print(f"\n[bold]Job {job.job_id}[/bold] ({job.company_id})")
    console.print(f"  Status:   {_styled(job.status)}")
    console.print(f"  Progress: {job.progress_percent}%")
    console.print(f"  Step:     {job.current_step}")
    if job.error_message:
        console.print(f"  Error:    {job.error_message}", style="red")

    if job.stage_progress:
        stages = Table(title="Stages", box=box.ROUNDED)
        stages.add_column("Stage", style="cyan")
        stages.add_column("Status")
        stages.add_column("Detail", style="dim")
        for stage_id, entry in sorted(job.stage_progress.items()):
            stages.add_row(stage_id, entry.get("status", ""), entry.get("error") or "")
        console.print(stages)

    table = Table(title="Volumes", box=box.ROUNDED)
    table.add_column("#", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Score", style="yellow")
    table.add_column("Iteration")
    table.add_column("Pages")
    for v in volumes:
        table.add_row(
            str(v.number), v.name, v.status,
            "-" if v.score is None else str(v.score),
            str(v.iteration), str(v.page_count),
        )
    console.print(table)


def cmd_list(args):
    """List jobs"""
    statuses = [args.status] if args.status else None
    jobs = asyncio.run(_with_store(lambda store: store.list_jobs(statuses)))

    if not jobs:
        console.print("No jobs found.", style="yellow")
        return

    table = Table(title="Jobs", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Company")
    table.add_column("Status")
    table.add_column("Progress", style="yellow")
    table.add_column("Updated", style="dim")
    for job in sorted(jobs, key=lambda j: j.updated_at, reverse=True):
        table.add_row(
            job.job_id, job.company_id, _styled(job.status),
            f"{job.progress_percent}%", job.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def cmd_cancel(args):
    """Cancel a job by marking it cancelled in the store"""
    async def run(store):
        await store.update_job(
            args.job_id,
            status=JobStatus.CANCELLED,
            current_step="Cancelled by operator",
            completed_at=utcnow(),
        )

    try:
        asyncio.run(_with_store(run))
    except JobNotFound:
        console.print(f"Error: Job '{args.job_id}' not found", style="red")
        sys.exit(1)
    except InvalidTransition as e:
        console.print(f"Error: {e}", style="red")
        sys.exit(1)
    console.print(f"✓ Cancelled {args.job_id}", style="green")


def cmd_sweep(args):
    """One monitor pass"""
    config = get_config()

    async def run(store):
        return await StallMonitor(store, config=config.monitor).sweep()

    terminated = asyncio.run(_with_store(run))
    if not terminated:
        console.print("✓ No stalled or over-time jobs", style="green")
        return
    for result in terminated:
        console.print(f"✗ {result.job_id}: {result.message}", style="red")


def cmd_monitor(args):
    """Sweep on an interval until interrupted"""
    config = get_config()
    if args.interval:
        config.monitor.sweep_interval_seconds = args.interval

    async def run(store):
        await StallMonitor(store, config=config.monitor).run_forever()

    console.print(
        f"Monitoring every {config.monitor.sweep_interval_seconds:g}s "
        f"(stall {config.monitor.stall_minutes:g} min, cap {config.monitor.hard_cap_minutes:g} min)",
        style="cyan",
    )
    try:
        asyncio.run(_with_store(run))
    except KeyboardInterrupt:
        console.print("Monitor stopped", style="yellow")


def cmd_estimate(args):
    """Minute range for an RFP file or a size in bytes"""
    if args.source.isdigit():
        label, size = "input", int(args.source)
    else:
        path = Path(args.source)
        if not path.exists():
            console.print(f"Error: File not found: {args.source}", style="red")
            sys.exit(1)
        label, size = path.name, path.stat().st_size

    estimate = estimate_generation_time(size)
    console.print(f"{label}: {size / 1024:.1f} KB -> {estimate['min']}-{estimate['max']} minutes")


def cmd_serve(args):
    """Start the API server"""
    import uvicorn
    from api.main import app

    console.print(f"Starting PropelAI orchestrator on {args.host}:{args.port}...", style="cyan")
    uvicorn.run(app, host=args.host, port=args.port)


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="PropelAI - Proposal Generation Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  propelai serve --port 8000
  propelai status 3f1c...
  propelai list --status blocked
  propelai sweep
  propelai estimate ./rfp.txt
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", help="Job ID")

    list_parser = subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("--status", "-s", choices=[s.value for s in JobStatus], help="Filter by status")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", help="Job ID")

    subparsers.add_parser("sweep", help="Run one monitor pass")

    monitor_parser = subparsers.add_parser("monitor", help="Run the monitor continuously")
    monitor_parser.add_argument("--interval", "-i", type=float, help="Seconds between sweeps")

    estimate_parser = subparsers.add_parser("estimate", help="Estimate generation time")
    estimate_parser.add_argument("source", help="Path to RFP text, or its size in bytes")

    serve_parser = subparsers.add_parser("serve", help="Start API server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Port to bind")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging()

    commands = {
        "status": cmd_status,
        "list": cmd_list,
        "cancel": cmd_cancel,
        "sweep": cmd_sweep,
        "monitor": cmd_monitor,
        "estimate": cmd_estimate,
        "serve": cmd_serve,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
