#!/usr/bin/env python3
"""
Cadenza CLI

Run queue workers and inspect queue, job and cache state from the command line.
"""

import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
import yaml

from .. import __version__
from ..cache import CacheLayer, CacheNamespace
from ..core.config import CadenzaConfig, load_config, setup_logging
from ..core.errors import CadenzaError
from ..persistence import RedisStoreAdapter
from ..pooling import CredentialStore, TenantResourcePool
from ..providers import HTTPTokenRefresher, http_client_factory
from ..task_queue import JobQueue, Worker, DEFAULT_QUEUES

logger = logging.getLogger(__name__)


def parse_handler_spec(spec: str) -> Tuple[str, Any, Optional[str]]:
    """
    Parse `queue=package.module:function[@tenant_key]`

    Returns (queue_name, handler, tenant_key).
    """
    try:
        queue_name, target = spec.split("=", 1)
        target, _, tenant_key = target.partition("@")
        module_name, function_name = target.split(":", 1)
    except ValueError:
        raise click.BadParameter(
            f"'{spec}' is not of the form queue=module:function[@tenant_key]"
        )
    try:
        module = importlib.import_module(module_name)
        handler = getattr(module, function_name)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(f"Cannot load handler {target}: {e}")
    return queue_name, handler, tenant_key or None


class CadenzaCLI:
    """Wires the store, pool, cache and queue from configuration"""

    def __init__(self, config: CadenzaConfig):
        self.config = config
        self.store: Optional[RedisStoreAdapter] = None
        self.pool: Optional[TenantResourcePool] = None
        self.cache: Optional[CacheLayer] = None
        self.queue: Optional[JobQueue] = None

    async def setup(self) -> None:
        self.store = RedisStoreAdapter(redis_url=self.config.redis_url, db=self.config.redis_db)
        await self.store.initialize()

        provider = self.config.provider
        refresher = None
        if provider.can_refresh:
            refresher = HTTPTokenRefresher(
                provider.token_url, provider.client_id, provider.client_secret,
                timeout=provider.request_timeout_seconds
            )
        else:
            logger.warning("No OAuth client configured; expired tokens will not be refreshed")

        credentials = CredentialStore(self.store, ttl_seconds=self.config.pool.credential_ttl_seconds)
        self.pool = TenantResourcePool(
            credentials,
            http_client_factory(provider.api_base_url, provider.request_timeout_seconds),
            token_refresher=refresher,
            config=self.config.pool
        )
        self.cache = CacheLayer(self.store, self.config.cache)
        self.queue = JobQueue(self.store, self.config.queue)

    async def shutdown(self) -> None:
        if self.pool:
            await self.pool.close()
        if self.store:
            await self.store.shutdown()


def _run(ctx: click.Context, body) -> None:
    """Run an async command body against a configured CLI instance"""

    async def runner():
        app = CadenzaCLI(ctx.obj["config"])
        try:
            await app.setup()
            await body(app)
        finally:
            await app.shutdown()

    try:
        asyncio.run(runner())
    except CadenzaError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='Configuration file (default: ~/.cadenza/config.yaml)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.version_option(version=__version__, prog_name='Cadenza')
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool):
    """
    Cadenza - tenant pooling, caching and job queues

    Run workers and inspect queues of the assistant backend.
    """
    try:
        config = load_config(config_path)
    except CadenzaError as e:
        raise click.ClickException(str(e))
    if verbose:
        config.log_level = "DEBUG"
    setup_logging(config)
    ctx.obj = {"config": config}


@cli.command()
@click.option('--handler', 'handler_specs', multiple=True, required=True,
              help='queue=module:function[@tenant_key]; repeat for several queues')
@click.option('--concurrency', type=int, help='Jobs in flight per queue')
@click.option('--once', is_flag=True, help='Drain the queues once and exit')
@click.pass_context
def worker(ctx: click.Context, handler_specs: Tuple[str, ...], concurrency: Optional[int], once: bool):
    """Process jobs from one or more queues"""
    handlers = [parse_handler_spec(spec) for spec in handler_specs]
    config: CadenzaConfig = ctx.obj["config"]
    if concurrency:
        config.worker.concurrency = concurrency

    async def body(app: CadenzaCLI):
        job_worker = Worker(app.queue, pool=app.pool, cache=app.cache, config=config.worker)
        for queue_name, handler, tenant_key in handlers:
            job_worker.register(queue_name, handler, tenant_key=tenant_key)

        if once:
            for queue_name in job_worker.handlers:
                taken = await job_worker.run_once(queue_name)
                click.echo(f"✓ {queue_name}: processed {taken} jobs")
            return

        await app.pool.start()
        async with job_worker:
            click.echo(f"🎵 Worker {job_worker.worker_id} running on {', '.join(job_worker.handlers)}")
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                click.echo("\n⚠️  Stopping worker")
                raise

    _run(ctx, body)


@cli.command()
@click.argument('queue_name')
@click.argument('payload')
@click.option('--priority', type=int, help='Lower runs sooner')
@click.option('--timeout-ms', type=int, help='Per-attempt timeout')
@click.option('--retries', type=int, default=0, show_default=True, help='Retries after the first attempt')
@click.pass_context
def enqueue(ctx: click.Context, queue_name: str, payload: str, priority: Optional[int],
            timeout_ms: Optional[int], retries: int):
    """Add a job with a JSON PAYLOAD to QUEUE_NAME"""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Payload is not valid JSON: {e}")

    async def body(app: CadenzaCLI):
        job_id = await app.queue.add_job(
            queue_name, data, priority=priority, timeout_ms=timeout_ms, retries_allowed=retries
        )
        click.echo(job_id)

    _run(ctx, body)


@cli.command('job-status')
@click.argument('job_id')
@click.pass_context
def job_status(ctx: click.Context, job_id: str):
    """Show a job's record"""

    async def body(app: CadenzaCLI):
        job = await app.queue.get_job_status(job_id)
        if job is None:
            raise click.ClickException(f"Job {job_id} not found (never existed or expired)")
        icon = {"completed": "✅", "failed": "❌", "processing": "⚙️ "}.get(job.state.value, "⏳")
        click.echo(f"{icon} {job.id} [{job.queue_name}] {job.state.value} (attempt {job.attempt})")
        if job.result is not None:
            click.echo(f"   Result: {json.dumps(job.result)}")
        if job.error:
            click.echo(f"   Error: {job.error_type}: {job.error}")
        if job.retry_job_id:
            click.echo(f"   Retried as: {job.retry_job_id}")

    _run(ctx, body)


@cli.command()
@click.option('--queue', 'queues', multiple=True, help='Queue to report (default: all known queues)')
@click.pass_context
def stats(ctx: click.Context, queues: Tuple[str, ...]):
    """Show queue depths and job state counts"""

    async def body(app: CadenzaCLI):
        report = await app.queue.get_queue_stats(list(queues) or DEFAULT_QUEUES)
        click.echo("📊 Queue Depths:")
        for name, depth in report["queue_depths"].items():
            click.echo(f"   {name}: {depth}")
        click.echo(f"\n📈 Jobs ({report['total_jobs']} records):")
        for state, count in report["state_counts"].items():
            click.echo(f"   {state}: {count}")

    _run(ctx, body)


@cli.command()
@click.option('--queue', 'queues', multiple=True, help='Queue to repair (default: all known queues)')
@click.pass_context
def reconcile(ctx: click.Context, queues: Tuple[str, ...]):
    """Repair abandoned jobs, corrupt records and dangling queue entries"""

    async def body(app: CadenzaCLI):
        repaired = await app.queue.reconcile(list(queues) or DEFAULT_QUEUES)
        click.echo(f"🧹 Repaired {repaired} entries")

    _run(ctx, body)


@cli.command('cache-clear')
@click.argument('tenant_id')
@click.option('--namespace', type=click.Choice([ns.value for ns in CacheNamespace]),
              help='Only clear one namespace')
@click.pass_context
def cache_clear(ctx: click.Context, tenant_id: str, namespace: Optional[str]):
    """Drop cached entries of a tenant"""

    async def body(app: CadenzaCLI):
        if namespace:
            removed = await app.cache.invalidate_namespace(namespace, tenant_id)
        else:
            removed = await app.cache.invalidate_tenant(tenant_id)
        click.echo(f"🧹 Removed {removed} cache entries for {tenant_id}")

    _run(ctx, body)


@cli.command()
@click.argument('tenant_id')
@click.pass_context
def logout(ctx: click.Context, tenant_id: str):
    """Forget a tenant's credentials and cached data"""

    async def body(app: CadenzaCLI):
        await app.pool.invalidate(tenant_id)
        removed = await app.cache.invalidate_tenant(tenant_id)
        click.echo(f"✓ Logged out {tenant_id} ({removed} cache entries removed)")

    _run(ctx, body)


@cli.command()
@click.pass_context
def config(ctx: click.Context):
    """Show the effective configuration"""
    config_file = Path.home() / '.cadenza' / 'config.yaml'
    data: Dict[str, Any] = ctx.obj["config"].to_dict()
    data["provider"]["client_secret"] = "***" if data["provider"]["client_secret"] else ""
    click.echo(f"📋 Configuration (default file: {config_file})")
    click.echo(yaml.dump(data, default_flow_style=False, indent=2, sort_keys=False))


def main():
    """Main CLI entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\n⚠️  Interrupted by user")
        sys.exit(130)


if __name__ == '__main__':
    main()
