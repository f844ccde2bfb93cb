from __future__ import annotations

import typer
import yaml
from importlib import metadata
from typing import NoReturn
from rich.console import Console
from rich.table import Table

from shardlock.core.catalog import Catalog, load_challenge_file
from shardlock.core.config import DEFAULT_CONFIG_NAME, load_master_config, resolve_config_path
from shardlock.core.db import connect, init_db
from shardlock.core.errors import (
    CatalogError,
    ChallengeNotFound,
    PersistenceFailure,
    ShardlockError,
    ValidationFailed,
)
from shardlock.core.models import AgentIdentity
from shardlock.core.progress import ProgressStore
from shardlock.core.registry import build_dispatcher
from shardlock.core.service import ShardService


app = typer.Typer(add_completion=False, help="Shardlock: gated puzzle fragments that assemble a final code")
console = Console()


def _get_version() -> str:
    try:
        return metadata.version("shardlock")
    except metadata.PackageNotFoundError:
        return "0.0.0+local"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the Shardlock version and exit.",
        is_eager=True,
    ),
):
    if version:
        console.print(_get_version())
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


def _get_service(config_path: str) -> ShardService:
    cfg = load_master_config(resolve_config_path(config_path))
    catalog = Catalog.from_files(cfg.challenge_paths)
    conn = connect(cfg.db_path)
    init_db(conn)
    return ShardService(
        catalog,
        ProgressStore(conn, catalog),
        build_dispatcher(cfg),
        audit_path=cfg.audit_path,
        retries=cfg.rewards.retries,
    )


def _fail(err: Exception) -> NoReturn:
    console.print(f"❌ {err}")
    if isinstance(err, ChallengeNotFound):
        raise typer.Exit(code=2)
    if isinstance(err, ValidationFailed):
        raise typer.Exit(code=5)
    if isinstance(err, PersistenceFailure):
        raise typer.Exit(code=6)
    raise typer.Exit(code=3)


ConfigOption = typer.Option(DEFAULT_CONFIG_NAME, "--config", help="Path to master config")


def _agent(agent: str, bungie_id: str, display_name: str) -> AgentIdentity:
    return AgentIdentity(agent_id=agent, bungie_id=bungie_id, display_name=display_name or agent)


challenge_app = typer.Typer(help="Challenge operations")
agent_app = typer.Typer(help="Agent operations")
catalog_app = typer.Typer(help="Catalog maintenance")
rewards_app = typer.Typer(help="Reward ledger")
app.add_typer(challenge_app, name="challenge")
app.add_typer(agent_app, name="agent")
app.add_typer(catalog_app, name="catalog")
app.add_typer(rewards_app, name="rewards")


@challenge_app.command("list")
def challenge_list(config: str = ConfigOption):
    service = _get_service(config)
    table = Table(title="Shardlock Challenges")
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Format")
    table.add_column("Mode")
    table.add_column("Steps", justify="right")
    for c in service.list_available():
        table.add_row(
            c.challenge_id,
            c.title,
            c.code_format.template,
            "shared" if c.is_shared else "private",
            str(len(c.sub_challenges)),
        )
    console.print(table)


@challenge_app.command("info")
def challenge_info(
    challenge_id: str = typer.Argument(..., help="Challenge id"),
    config: str = ConfigOption,
):
    service = _get_service(config)
    try:
        view = service.challenge_view(challenge_id)
    except ShardlockError as e:
        _fail(e)
    console.print_json(data=view)


@challenge_app.command("grid")
def challenge_grid(
    challenge_id: str = typer.Argument(..., help="Challenge id"),
    config: str = ConfigOption,
):
    service = _get_service(config)
    try:
        view = service.challenge_view(challenge_id)
    except ShardlockError as e:
        _fail(e)
    if "final_code" not in view:
        console.print(f"{challenge_id} is private: each agent assembles their own code.")
        return

    table = Table(title=f"{challenge_id} final code ({view['completion']}%)")
    table.add_column("Group", style="bold")
    table.add_column("Slot")
    table.add_column("Value")
    for group, slots in view["final_code"].items():
        for slot, value in slots.items():
            table.add_row(group, slot, value or "·")
    console.print(table)


@challenge_app.command("access")
def challenge_access(
    challenge_id: str = typer.Argument(..., help="Challenge id"),
    index: int = typer.Argument(..., help="Sub-challenge index"),
    code: str = typer.Option(..., "--code", "-c", help="Access code"),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent id"),
    config: str = ConfigOption,
):
    service = _get_service(config)
    try:
        result = service.submit_access_code(challenge_id, index, _agent(agent, "", ""), code)
    except ShardlockError as e:
        _fail(e)
    for line in result.prompt_lines:
        console.print(line)


@challenge_app.command("submit")
def challenge_submit(
    challenge_id: str = typer.Argument(..., help="Challenge id"),
    index: int = typer.Argument(..., help="Sub-challenge index"),
    answer: str = typer.Option(..., "--answer", help="Answer to check"),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent id"),
    bungie_id: str = typer.Option("", "--bungie-id", help="Bungie membership id"),
    display_name: str = typer.Option("", "--name", help="Display name"),
    config: str = ConfigOption,
):
    service = _get_service(config)
    try:
        result = service.submit_answer(challenge_id, index, _agent(agent, bungie_id, display_name), answer)
    except ShardlockError as e:
        _fail(e)

    if result.fragment_unlocked:
        fragments = ", ".join(o.fragment_id for o in result.outcomes if o.fragment_unlocked)
        console.print(f"🔓 [bold green]UNLOCKED[/bold green] {fragments}")
    else:
        console.print("✔️  Already unlocked, nothing changed.")
    for o in result.outcomes:
        if o.conflict is not None:
            console.print(f"ℹ️  {o.conflict.group}.{o.conflict.slot} was already filled by another agent.")
    if result.reward_dispatched:
        console.print(f"🎁 Reward {result.reward_id} dispatched.")
    if result.reward_error:
        console.print(f"⚠️  {result.reward_error}")
    if result.challenge_complete:
        console.print("🏁 [bold]Challenge complete.[/bold]")
    elif result.agent_complete:
        console.print("🏁 [bold]Your code is complete.[/bold]")


@challenge_app.command("hints")
def challenge_hints(
    challenge_id: str = typer.Argument(..., help="Challenge id"),
    index: int = typer.Argument(..., help="Sub-challenge index"),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent id"),
    config: str = ConfigOption,
):
    service = _get_service(config)
    try:
        lines = service.hints(challenge_id, index, _agent(agent, "", ""))
    except ShardlockError as e:
        _fail(e)
    if not lines:
        console.print("No hints unlocked yet.")
        return
    for i, line in enumerate(lines, start=1):
        console.print(f"{i}. {line}")


@agent_app.command("progress")
def agent_progress(
    agent: str = typer.Option(..., "--agent", "-a", help="Agent id"),
    challenge_id: str = typer.Option("", "--challenge", help="Limit to one challenge"),
    config: str = ConfigOption,
):
    service = _get_service(config)
    try:
        if challenge_id:
            records = [service.get_progress(challenge_id, _agent(agent, "", ""))]
        else:
            records = service.agent_overview(agent)
    except ShardlockError as e:
        _fail(e)

    if not records:
        console.print(f"No progress recorded for {agent}.")
        return

    table = Table(title=f"Progress for {agent}")
    table.add_column("Challenge", style="bold")
    table.add_column("Code")
    table.add_column("Fragments")
    table.add_column("State")
    table.add_column("Updated", justify="right")
    for p in records:
        table.add_row(
            p.challenge_id,
            p.current_progress,
            ", ".join(sorted(p.unlocked_fragments)) or "-",
            p.state.value,
            p.last_updated.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@catalog_app.command("check")
def catalog_check(path: str = typer.Argument(..., help="Challenge YAML file")):
    try:
        challenge = load_challenge_file(path)
    except (CatalogError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"❌ {e}")
        raise typer.Exit(code=4)
    console.print(
        f"✅ {challenge.challenge_id}: {len(challenge.sub_challenges)} sub-challenges, "
        f"{len(challenge.fragment_slots)} fragments on {challenge.code_format.template}"
    )


@rewards_app.command("list")
def rewards_list(
    status: str = typer.Option("", "--status", help="pending, sent or failed"),
    config: str = ConfigOption,
):
    service = _get_service(config)
    rows = service.store.rewards(status or None)
    if not rows:
        console.print("No rewards recorded.")
        return
    table = Table(title="Reward Ledger")
    table.add_column("Challenge", style="bold")
    table.add_column("Agent")
    table.add_column("Reward")
    table.add_column("Status")
    table.add_column("Claimed", justify="right")
    for r in rows:
        table.add_row(r["challenge_id"], r["agent_id"], r["reward_id"], r["status"], r["claimed_at"])
    console.print(table)
