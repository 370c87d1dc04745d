import json
import logging
import multiprocessing
import signal

import click

import config
from dashboard import run_dashboard
from errors import JobEngineError
from manager import QueueManager
from models import JobStatus
from worker import run_worker_process

queue_choice = click.Choice(config.QUEUE_NAMES)


def _manager(ctx) -> QueueManager:
    obj = ctx.find_root().obj
    if "manager" not in obj:
        obj["manager"] = QueueManager.open(obj["db"])
    return obj["manager"]


def _echo_job(job):
    click.echo(f"  - ID: {job.id}")
    click.echo(f"    Queue: {job.queue_name}")
    click.echo(f"    Status: {job.status.value} ({job.progress}%)")
    click.echo(f"    Attempts: {job.attempts}/{job.max_attempts}")
    click.echo(f"    Payload: {json.dumps(job.payload)}")
    if job.result is not None:
        click.echo(f"    Result: {json.dumps(job.result)}")
    if job.failure_reason:
        click.echo(f"    Error: {job.failure_reason}")


@click.group()
@click.option("--db", default=config.DB_FILE, envvar="JOBCTL_DB", show_default=True,
              help="Path of the job database.")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
@click.pass_context
def cli(ctx, db, verbose):
    """Operate the document and AI job queues."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db"] = db


@cli.command()
@click.pass_context
def initdb(ctx):
    """Create the job database."""
    _manager(ctx)
    click.echo("Database initialized successfully.")


@cli.command()
@click.argument("queue_name", type=queue_choice)
@click.argument("payload", type=str)
@click.option("--priority", default=0, type=int, help="Higher runs first.")
@click.option("--max-attempts", type=click.IntRange(min=1), help="Defaults to the queue's setting.")
@click.option("--delay", default=0.0, type=click.FloatRange(min=0), help="Seconds before the job is visible.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Max execution seconds.")
@click.option("--id", "job_id", help="Job id; generated when omitted.")
@click.pass_context
def enqueue(ctx, queue_name, payload, priority, max_attempts, delay, timeout, job_id):
    """Add a job with a JSON PAYLOAD to QUEUE_NAME."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        raise click.ClickException("Invalid JSON payload.")

    try:
        job = _manager(ctx).enqueue(
            queue_name, data, priority=priority, max_attempts=max_attempts,
            delay=delay, timeout=timeout, job_id=job_id,
        )
    except JobEngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"Job '{job.id}' enqueued on {queue_name} (Priority: {job.priority}).")


@cli.command()
@click.pass_context
def status(ctx):
    """Show job counts per queue and queue health."""
    manager = _manager(ctx)
    stats = manager.stats()
    click.echo(" Job Status Summary:")
    for queue_name in config.QUEUE_NAMES:
        counts = stats[config.STATS_KEYS[queue_name]]
        click.echo(f"  {queue_name}:")
        for s in JobStatus:
            click.echo(f"    - {s.value.upper()}: {counts[s.value]}")

    health = manager.health()
    click.echo(f"\n Health: {health['status']}")
    if "error" in health:
        click.echo(f"  {health['error']}")


@cli.command(name="list")  # Use 'name=' to avoid conflict with Python 'list'
@click.option("--queue", "queue_name", type=queue_choice, required=True)
@click.option("--status", "status_name", type=click.Choice([s.value for s in JobStatus], case_sensitive=False),
              help="Only jobs in this status.")
@click.pass_context
def list_cmd(ctx, queue_name, status_name):
    """List the jobs of a queue."""
    status_filter = JobStatus(status_name.lower()) if status_name else None
    jobs = _manager(ctx).list_jobs(queue_name, status_filter)
    click.echo(f"Jobs in '{queue_name}'" + (f" with status '{status_filter.value}':" if status_filter else ":"))
    if not jobs:
        click.echo("  No jobs found.")
        return
    for job in jobs:
        _echo_job(job)
        click.echo("-" * 20)


@cli.command()
@click.argument("queue_name", type=queue_choice)
@click.argument("job_id")
@click.pass_context
def show(ctx, queue_name, job_id):
    """Print one job as JSON."""
    try:
        job = _manager(ctx).get_job(queue_name, job_id)
    except JobEngineError as e:
        raise click.ClickException(e.message)
    click.echo(json.dumps(job.to_dict(), indent=2))


@cli.command()
@click.argument("queue_name", type=queue_choice)
@click.argument("job_id")
@click.pass_context
def retry(ctx, queue_name, job_id):
    """Move a failed job back to waiting."""
    try:
        _manager(ctx).retry_job(queue_name, job_id)
    except JobEngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"Job '{job_id}' moved back to 'waiting'.")


@cli.command()
@click.argument("queue_name", type=queue_choice)
@click.argument("job_id")
@click.pass_context
def remove(ctx, queue_name, job_id):
    """Delete a job."""
    try:
        _manager(ctx).remove_job(queue_name, job_id)
    except JobEngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"Job '{job_id}' removed.")


@cli.command()
@click.pass_context
def sweep(ctx):
    """Reclaim jobs whose worker lease has expired."""
    reclaimed = _manager(ctx).sweep()
    click.echo(f"Reclaimed {len(reclaimed)} job(s).")


@cli.command()
@click.option("--queue", "queue_name", type=queue_choice, help="Only this queue.")
@click.pass_context
def prune(ctx, queue_name):
    """Delete old finished jobs beyond each queue's retention limits."""
    removed = _manager(ctx).prune(queue_name)
    for name, count in removed.items():
        click.echo(f"  - {name}: {count} removed")


@click.group()
def worker():
    """Run worker pools."""


@worker.command()
@click.option("--queue", "queue_names", type=queue_choice, multiple=True,
              help="Queue to serve; repeat for several. Defaults to all queues.")
@click.option("--handlers", "handlers_ref", default="handlers:HANDLERS", show_default=True,
              help="module:attribute mapping queue names to handler functions.")
@click.option("--concurrency", type=click.IntRange(min=1), help="Workers per queue; defaults to the queue's setting.")
@click.pass_context
def start(ctx, queue_names, handlers_ref, concurrency):
    """Start one worker pool process per queue."""
    db_file = ctx.find_root().obj["db"]
    _manager(ctx)
    queue_names = queue_names or config.QUEUE_NAMES

    click.echo(f"Starting worker pools for: {', '.join(queue_names)}")
    click.echo("Press CTRL+C to stop all workers.")

    processes = []
    for queue_name in queue_names:
        p = multiprocessing.Process(
            target=run_worker_process,
            args=(db_file, queue_name, handlers_ref, concurrency),
            name=f"pool-{queue_name}",
        )
        p.start()
        processes.append(p)

    def shutdown_main(sig, frame):
        click.echo("\nMain process received signal, stopping all pools...")
        for p in processes:
            p.terminate()

    signal.signal(signal.SIGINT, shutdown_main)
    signal.signal(signal.SIGTERM, shutdown_main)

    for p in processes:
        p.join()
    click.echo("All workers have shut down.")


cli.add_command(worker)


@click.group(name="config")
def config_group():
    """Manage configuration (attempts, backoff, leases, etc.)."""


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set KEY (e.g. 'user-requests.max_attempts' or 'poll_interval') to VALUE."""
    try:
        config.validate_config(key, value)
    except ValueError as e:
        raise click.ClickException(f"{e} Valid keys are: {', '.join(config.config_keys())}")
    _manager(ctx).store.set_config(key, value)
    click.echo(f"Config updated: {key} = {value}")


@config_group.command(name="show")
@click.pass_context
def config_show(ctx):
    """Print the effective settings."""
    settings = _manager(ctx).settings
    for key in ("poll_interval", "sweep_interval", "priority_aging", "failed_ratio_threshold", "health_min_jobs"):
        click.echo(f"{key} = {getattr(settings, key)}")
    for queue_name, queue_settings in settings.queues.items():
        for key, value in vars(queue_settings).items():
            click.echo(f"{queue_name}.{key} = {value}")


cli.add_command(config_group)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=5000, type=int, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Run the job control HTTP API."""
    run_dashboard(_manager(ctx), host=host, port=port)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
