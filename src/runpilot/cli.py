from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from runpilot.approvals import ApprovalGate
from runpilot.backends import OpenAIChatBackend, ResilientBackend, RetryPolicy
from runpilot.config import PilotConfig, load_config, save_config
from runpilot.engine import ControlLoop
from runpilot.executor import ExecutorLoadError, load_executor
from runpilot.finalizer import Finalizer
from runpilot.logging_config import configure_logging
from runpilot.loop_guard import LoopGuard
from runpilot.memory import MemoryManager
from runpilot.scheduler import Scheduler
from runpilot.service import RunNotFoundError, RunService, RunValidationError
from runpilot.specialists import (
    ApprovalJudgeAgent,
    CriticAgent,
    DocumenterAgent,
    LoopJudgeAgent,
    PlannerAgent,
)
from runpilot.state import RunStore, RunStoreError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: PilotConfig
    store: RunStore
    scheduler: Scheduler
    service: RunService


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _record_backend_event(event: dict[str, Any]) -> None:
    logger.debug("backend event %s", json.dumps(event, ensure_ascii=False))


def _build_backend(config: PilotConfig) -> ResilientBackend:
    primary = OpenAIChatBackend(
        base_url=config.backend.base_url,
        model=config.backend.model,
        api_key_env=config.backend.api_key_env,
        name="primary",
    )
    fallback = None
    if config.backend.fallback_base_url:
        fallback = OpenAIChatBackend(
            base_url=config.backend.fallback_base_url,
            model=config.backend.fallback_model or config.backend.model,
            api_key_env=config.backend.api_key_env,
            name="fallback",
        )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback" if fallback else None,
        fallback_backend=fallback,
        retry_policy=policy,
        event_hook=_record_backend_event,
    )


def _build_control_loop(config: PilotConfig, store: RunStore) -> ControlLoop:
    backend = _build_backend(config)
    memory = MemoryManager(store)
    critic = CriticAgent(backend, model=config.model_for("self_check"))
    approval_judge = None
    if config.models.approval_gate:
        approval_judge = ApprovalJudgeAgent(backend, model=config.model_for("approval_gate"))
    try:
        executor = load_executor(config.executor.factory)
    except ExecutorLoadError as exc:
        raise click.ClickException(str(exc)) from exc
    return ControlLoop(
        store,
        PlannerAgent(
            backend,
            model=config.model_for("planner"),
            refine_plans=config.agent.plan_refinement,
        ),
        executor=executor,
        memory=memory,
        approval_gate=ApprovalGate(approval_judge),
        loop_guard=LoopGuard(
            LoopJudgeAgent(backend, model=config.model_for("loop_guard")),
            history_window=config.agent.history_window,
        ),
        critic=critic,
        documenter=DocumenterAgent(backend, model=config.model_for("summarization")),
        finalizer=Finalizer(store, memory, CriticAgent(backend, model=config.model_for("verification"))),
        defaults=config.agent.run_settings(),
        summary_interval=config.agent.summary_interval,
    )


def _load_runtime(root: Path, config_path: Path, *, verbose: bool = False) -> Runtime:
    config = load_config(config_path)
    configure_logging("DEBUG" if verbose else config.logging.level)
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = root / state_dir
    store = RunStore(state_dir, tables_ready=config.state.agent_tables_ready)
    scheduler = Scheduler(
        store,
        _build_control_loop(config, store),
        poll_interval=config.queue.poll_interval_seconds,
        stuck_threshold_seconds=config.queue.stuck_run_threshold_seconds,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        scheduler=scheduler,
        service=RunService(store, scheduler),
    )


def _runtime(config_value: str, verbose: bool = False) -> Runtime:
    root = Path.cwd().resolve()
    return _load_runtime(root, _resolve_config_path(root, config_value), verbose=verbose)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
def cli() -> None:
    """Runpilot CLI."""


@cli.command("init")
@click.option("--model", default=None, help="Default model for every role.")
@click.option("--base-url", default=None, help="OpenAI-compatible endpoint.")
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def init_command(model: str | None, base_url: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if model:
        config.backend.model = model
    if base_url:
        config.backend.base_url = base_url
    save_config(config_path, config)
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = root / state_dir
    RunStore(state_dir, tables_ready=config.state.agent_tables_ready)

    click.echo(f"Initialized runpilot in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.backend.model} @ {config.backend.base_url}")
    if not os.environ.get(config.backend.api_key_env):
        click.echo(f"API key: ${config.backend.api_key_env} not set (fine for local Ollama)")


@cli.command("submit")
@click.argument("prompt")
@click.option("--model", default=None)
@click.option("--tool", "tools", multiple=True)
@click.option("--search-provider", default=None)
@click.option("--browser", "agent_browser", default=None)
@click.option("--headed", is_flag=True, default=False, help="Run the browser with a visible window.")
@click.option("--set", "overrides", multiple=True, help="Run setting as key=value, e.g. max_steps=6.")
@click.option("--no-approval", is_flag=True, default=False, help="Skip the human approval gate.")
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def submit_command(
    prompt: str,
    model: str | None,
    tools: tuple[str, ...],
    search_provider: str | None,
    agent_browser: str | None,
    headed: bool,
    overrides: tuple[str, ...],
    no_approval: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    settings: dict[str, str] = {}
    for item in overrides:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected key=value, got {item!r}.", param_hint="--set")
        settings[key.strip()] = value.strip()
    payload: dict[str, Any] = {
        "prompt": prompt,
        "model": model,
        "tools": list(tools),
        "search_provider": search_provider,
        "agent_browser": agent_browser,
        "run_headless": not headed,
    }
    if settings:
        payload["settings"] = settings
    if no_approval:
        payload["preferences"] = {"require_human_approval": False}
    try:
        run = runtime.service.create_run(payload)
    except (RunValidationError, RunStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Queued run {run.id}")


@cli.command("list")
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def list_command(limit: int, config_value: str) -> None:
    runtime = _runtime(config_value)
    listings = runtime.service.list_runs(limit=limit)
    if not listings:
        click.echo("No agent runs.")
        return
    for listing in listings:
        run = listing.run
        prompt = run.prompt if len(run.prompt) <= 60 else run.prompt[:57] + "..."
        click.echo(
            f"{run.id}  {run.status:<13}  {run.created_at}  "
            f"logs={listing.browser_log_count} snapshots={listing.snapshot_count}  {prompt}"
        )


@cli.command("show")
@click.argument("run_id")
@click.option("--audit", "include_audit", is_flag=True, default=False)
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def show_command(run_id: str, include_audit: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        run = runtime.service.get_run(run_id)
    except RunNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = run.to_dict()
    if include_audit:
        payload["audit"] = runtime.store.list_audit(run_id)
    _echo_json(payload)


@cli.command("approve")
@click.argument("run_id")
@click.option("--step", "step_id", default=None)
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def approve_command(run_id: str, step_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        run = runtime.service.approve_step(run_id, step_id)
    except (RunNotFoundError, RunValidationError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Approved step {run.active_step_id} of run {run.id}; run requeued.")


@cli.command("resume")
@click.argument("run_id")
@click.option("--step", "step_id", default=None)
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def resume_command(run_id: str, step_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        run = runtime.service.resume_run(run_id, step_id)
    except (RunNotFoundError, RunValidationError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Run {run.id} requeued.")


@cli.command("stop")
@click.argument("run_id")
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def stop_command(run_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        run = runtime.service.stop_run(run_id)
    except RunNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Run {run.id} is {run.status}.")


@cli.command("purge")
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def purge_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    deleted = runtime.service.delete_terminal_runs()
    click.echo(f"Deleted {deleted} finished runs.")


async def _work_forever(scheduler: Scheduler) -> None:
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


@cli.command("work")
@click.option("--once", is_flag=True, default=False, help="Drain the queue and exit.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="runpilot.toml", show_default=True)
def work_command(once: bool, verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value, verbose=verbose)
    if once:
        results = asyncio.run(runtime.scheduler.run_until_idle())
        for result in results:
            click.echo(f"{result.run_id}: {result.status}")
        click.echo(f"Processed {len(results)} runs.")
        return
    click.echo("Worker started; press Ctrl+C to stop.")
    try:
        asyncio.run(_work_forever(runtime.scheduler))
    except KeyboardInterrupt:
        click.echo("Worker stopped.")
