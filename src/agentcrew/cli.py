from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from agentcrew.config import CrewConfig, load_config, save_config
from agentcrew.errors import CrewError
from agentcrew.narration import MemorySink
from agentcrew.runtime import CrewRuntime
from agentcrew.tasks import ProjectPlan, TaskGraph


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load(config_value: str) -> CrewConfig:
    try:
        return load_config(_resolve_config_path(config_value))
    except CrewError as exc:
        raise click.ClickException(str(exc)) from exc


def _read_plan(plan_path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(plan_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not read plan {plan_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise click.ClickException(f"Plan {plan_path} must contain a JSON object.")
    return payload


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


async def _run_plan(runtime: CrewRuntime, payload: dict[str, Any]) -> dict[str, Any]:
    try:
        started = await runtime.start_project(payload)
        if not started["success"]:
            return started
        await runtime.wait_idle()
        return {
            "success": True,
            "project_id": started["project_id"],
            "work": runtime.work_status()["work"],
            "queue": runtime.queue_status(),
            "reviews": [context.to_dict() for context in runtime.reviews.all()],
        }
    finally:
        await runtime.close()


async def _chat(
    runtime: CrewRuntime,
    message: str,
    user_name: str,
    channel: str | None,
) -> dict[str, Any]:
    try:
        user_id = user_name.lower().replace(" ", "-")
        result = await runtime.handle_chat(
            message, user_id=user_id, user_name=user_name, channel=channel
        )
        if result["success"]:
            await runtime.wait_idle()
        return result
    finally:
        await runtime.close()


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Agent crew CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="crew.toml", show_default=True)
def init_command(config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = _load(config_value)
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Generator: {config.generator.primary} (fallback {config.generator.fallback})")
    click.echo(f"Repository host: {config.host.backend}")


@cli.command("run")
@click.argument("plan_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="crew.toml", show_default=True)
@click.option("--fast", is_flag=True, default=False, help="Skip pacing delays.")
@click.option("--offline", is_flag=True, default=False, help="Use the in-memory host.")
@click.option("--seed", type=int, default=None)
def run_command(
    plan_path: Path,
    config_value: str,
    fast: bool,
    offline: bool,
    seed: int | None,
) -> None:
    config = _load(config_value)
    payload = _read_plan(plan_path)
    try:
        runtime = CrewRuntime.from_config(config, offline=offline, fast=fast, seed=seed)
    except CrewError as exc:
        raise click.ClickException(str(exc)) from exc
    result = asyncio.run(_run_plan(runtime, payload))
    if not result["success"]:
        raise click.ClickException(result["error"])
    _echo_json(result)


@cli.command("chat")
@click.argument("message")
@click.option("--user", "user_name", default="User", show_default=True)
@click.option("--channel", default=None)
@click.option("--config", "config_value", default="crew.toml", show_default=True)
@click.option("--fast", is_flag=True, default=False, help="Skip pacing delays.")
@click.option("--offline", is_flag=True, default=False, help="Use the in-memory host.")
def chat_command(
    message: str,
    user_name: str,
    channel: str | None,
    config_value: str,
    fast: bool,
    offline: bool,
) -> None:
    config = _load(config_value)
    sink = MemorySink()
    try:
        runtime = CrewRuntime.from_config(config, offline=offline, fast=fast, sink=sink)
    except CrewError as exc:
        raise click.ClickException(str(exc)) from exc
    result = asyncio.run(_chat(runtime, message, user_name, channel))
    if not result["success"]:
        raise click.ClickException(result["error"])
    if not sink.messages:
        click.echo("No command or mention recognized.")
    for chat_message in sink.messages:
        click.echo(f"[#{chat_message.channel}] {chat_message.agent_name}: {chat_message.content}")


@cli.command("status")
@click.argument("plan_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, default=False)
def status_command(plan_path: Path, as_json: bool) -> None:
    graph = TaskGraph()
    try:
        plan = graph.add_project(ProjectPlan.from_dict(_read_plan(plan_path)))
    except CrewError as exc:
        raise click.ClickException(str(exc)) from exc
    rows = []
    for task in plan.tasks:
        waiting = [dep.id for dep in graph.unfinished_dependencies(plan.id, task.id)]
        rows.append(
            {
                "id": task.id,
                "title": task.title,
                "assigned_to": task.assigned_to,
                "status": task.status,
                "ready": graph.is_ready(plan.id, task.id),
                "waiting_on": waiting,
            }
        )
    if as_json:
        _echo_json({"project_id": plan.id, "tasks": rows})
        return
    click.echo(f"{plan.name} ({plan.repository})")
    for row in rows:
        marker = "ready" if row["ready"] else row["status"]
        suffix = f" waiting on {', '.join(row['waiting_on'])}" if row["waiting_on"] else ""
        click.echo(f"{row['id']} {marker:<11} {row['assigned_to']:<12} {row['title']}{suffix}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
